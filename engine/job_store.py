"""Job record model and the record stores backing it.

Two interchangeable backends implement the same async interface
(``create``/``get``/``update``/``list_all``):

- ``MemoryJobStore`` keeps records in a process-local dict.
- ``SqliteJobStore`` persists one row per job in ``download_jobs``.

Both serialize mutations per record with an ``asyncio.Lock`` so a progress
update racing a status transition is applied whole or not at all. Every
update goes through ``apply_changes`` which enforces the status machine and
the completion invariants.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

import anyio

from engine.errors import InvalidTransitionError, JobNotFoundError

JOB_STATUS_PENDING = "pending"
JOB_STATUS_DOWNLOADING = "downloading"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

JOB_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_DOWNLOADING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)

_ALLOWED_TRANSITIONS = {
    JOB_STATUS_PENDING: {JOB_STATUS_PENDING, JOB_STATUS_DOWNLOADING},
    JOB_STATUS_DOWNLOADING: {JOB_STATUS_DOWNLOADING, JOB_STATUS_COMPLETED, JOB_STATUS_FAILED},
}

_MUTABLE_FIELDS = {
    "status",
    "progress",
    "output_location",
    "attempts",
    "strategy",
    "last_error",
}


@dataclass(frozen=True)
class JobRecord:
    id: str
    source_url: str
    title: str
    requested_format: str
    status: str
    progress: int
    output_location: str | None
    created_at: str
    updated_at: str
    attempts: int = 0
    strategy: str | None = None
    last_error: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceUrl": self.source_url,
            "title": self.title,
            "format": self.requested_format,
            "status": self.status,
            "progress": self.progress,
            "outputLocation": self.output_location,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "attempts": self.attempts,
            "strategy": self.strategy,
            "lastError": self.last_error,
            "metadata": dict(self.metadata),
        }


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def new_job_record(*, source_url, title, requested_format, metadata=None, job_id=None):
    now = utc_now()
    return JobRecord(
        id=job_id or uuid4().hex,
        source_url=source_url,
        title=title,
        requested_format=requested_format,
        status=JOB_STATUS_PENDING,
        progress=0,
        output_location=None,
        created_at=now,
        updated_at=now,
        metadata=dict(metadata or {}),
    )


def apply_changes(record: JobRecord, changes: dict[str, Any]) -> JobRecord:
    """Return ``record`` with ``changes`` applied, or raise ``InvalidTransitionError``."""
    unknown = set(changes) - _MUTABLE_FIELDS
    if unknown:
        raise InvalidTransitionError(f"immutable or unknown fields: {', '.join(sorted(unknown))}")
    if record.is_terminal:
        raise InvalidTransitionError(f"job {record.id} is already {record.status}")

    status = changes.get("status", record.status)
    if status not in JOB_STATUSES:
        raise InvalidTransitionError(f"unknown status: {status}")
    if status not in _ALLOWED_TRANSITIONS[record.status]:
        raise InvalidTransitionError(f"illegal transition {record.status} -> {status}")

    updated = replace(record, **changes, updated_at=utc_now())
    progress = updated.progress
    if not isinstance(progress, int) or isinstance(progress, bool) or not 0 <= progress <= 100:
        raise InvalidTransitionError(f"progress out of range: {progress!r}")
    if (updated.output_location is not None) != (updated.status == JOB_STATUS_COMPLETED):
        raise InvalidTransitionError("output_location must be set exactly when completed")
    if (progress == 100) != (updated.status == JOB_STATUS_COMPLETED):
        raise InvalidTransitionError("progress reaches 100 exactly when completed")
    return updated


class JobStore(Protocol):
    async def create(self, *, source_url, title, requested_format, metadata=None) -> JobRecord:
        """Persist a new pending record and return it."""

    async def get(self, job_id) -> JobRecord:
        """Return the record or raise ``JobNotFoundError``."""

    async def update(self, job_id, **changes) -> JobRecord:
        """Apply ``changes`` atomically for one record and return the result."""

    async def list_all(self) -> list[JobRecord]:
        """Return every record, most recently created first."""


class _RecordLocks:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_job(self, job_id) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock


class MemoryJobStore:
    def __init__(self):
        self._records: dict[str, JobRecord] = {}
        self._locks = _RecordLocks()

    async def create(self, *, source_url, title, requested_format, metadata=None):
        record = new_job_record(
            source_url=source_url,
            title=title,
            requested_format=requested_format,
            metadata=metadata,
        )
        self._records[record.id] = record
        return record

    async def get(self, job_id):
        record = self._records.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def update(self, job_id, **changes):
        async with self._locks.for_job(job_id):
            record = await self.get(job_id)
            updated = apply_changes(record, changes)
            self._records[job_id] = updated
            return updated

    async def list_all(self):
        newest_first = list(reversed(list(self._records.values())))
        return sorted(newest_first, key=lambda r: r.created_at, reverse=True)


def ensure_download_jobs_table(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS download_jobs (
            id TEXT PRIMARY KEY,
            source_url TEXT NOT NULL,
            title TEXT NOT NULL,
            requested_format TEXT NOT NULL,
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            output_location TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            strategy TEXT,
            last_error TEXT,
            metadata TEXT
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_download_jobs_status ON download_jobs (status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_download_jobs_created ON download_jobs (created_at)")
    conn.commit()


class SqliteJobStore:
    def __init__(self, db_path):
        self.db_path = str(db_path)
        self._locks = _RecordLocks()
        conn = self._connect()
        try:
            ensure_download_jobs_table(conn)
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _row_to_job(self, row):
        if not row:
            return None
        row = dict(row)
        metadata = {}
        if row.get("metadata"):
            try:
                metadata = json.loads(row["metadata"])
            except json.JSONDecodeError:
                metadata = {}
        return JobRecord(
            id=row["id"],
            source_url=row["source_url"],
            title=row["title"],
            requested_format=row["requested_format"],
            status=row["status"],
            progress=int(row["progress"] or 0),
            output_location=row["output_location"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            attempts=int(row["attempts"] or 0),
            strategy=row["strategy"],
            last_error=row["last_error"],
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def _insert(self, record):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO download_jobs (
                    id, source_url, title, requested_format, status, progress,
                    output_location, created_at, updated_at, attempts, strategy,
                    last_error, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.source_url,
                    record.title,
                    record.requested_format,
                    record.status,
                    record.progress,
                    record.output_location,
                    record.created_at,
                    record.updated_at,
                    record.attempts,
                    record.strategy,
                    record.last_error,
                    json.dumps(record.metadata, default=str),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def _select(self, job_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM download_jobs WHERE id=?", (job_id,))
            return self._row_to_job(cur.fetchone())
        finally:
            conn.close()

    def _apply(self, job_id, changes):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("SELECT * FROM download_jobs WHERE id=?", (job_id,))
            record = self._row_to_job(cur.fetchone())
            if record is None:
                conn.rollback()
                raise JobNotFoundError(job_id)
            try:
                updated = apply_changes(record, changes)
            except InvalidTransitionError:
                conn.rollback()
                raise
            cur.execute(
                """
                UPDATE download_jobs
                SET status=?, progress=?, output_location=?, updated_at=?,
                    attempts=?, strategy=?, last_error=?
                WHERE id=?
                """,
                (
                    updated.status,
                    updated.progress,
                    updated.output_location,
                    updated.updated_at,
                    updated.attempts,
                    updated.strategy,
                    updated.last_error,
                    job_id,
                ),
            )
            conn.commit()
            return updated
        finally:
            conn.close()

    def _select_all(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM download_jobs ORDER BY created_at DESC, rowid DESC")
            return [self._row_to_job(row) for row in cur.fetchall()]
        finally:
            conn.close()

    async def create(self, *, source_url, title, requested_format, metadata=None):
        record = new_job_record(
            source_url=source_url,
            title=title,
            requested_format=requested_format,
            metadata=metadata,
        )
        await anyio.to_thread.run_sync(self._insert, record)
        return record

    async def get(self, job_id):
        record = await anyio.to_thread.run_sync(self._select, job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def update(self, job_id, **changes):
        async with self._locks.for_job(job_id):
            return await anyio.to_thread.run_sync(self._apply, job_id, changes)

    async def list_all(self):
        return await anyio.to_thread.run_sync(self._select_all)


def build_job_store(backend, *, db_path=None):
    if backend == "sqlite":
        return SqliteJobStore(db_path)
    return MemoryJobStore()
