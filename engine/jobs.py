"""Public entry point for submitting and observing download jobs."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import re
import unicodedata
from dataclasses import dataclass
from urllib.parse import urlparse

from config.settings import DEFAULT_SOURCE_URL_PATTERN
from engine.config import build_runtime_config
from engine.errors import JobNotFoundError, ValidationError
from engine.formats import normalize_format
from engine.job_store import JOB_STATUS_COMPLETED, build_job_store
from engine.log_events import log_event
from engine.paths import build_engine_paths
from engine.pipeline import StrategyPipeline
from engine.strategies import build_strategies

logger = logging.getLogger(__name__)

_METADATA_KEYS = ("duration", "thumbnail", "channel", "views", "publishDate")


@dataclass(frozen=True)
class OutputFile:
    path: str
    filename: str
    media_type: str


def sanitize_for_filesystem(name, maxlen=180):
    if not name:
        return ""
    name = unicodedata.normalize("NFC", str(name))
    name = re.sub(r"[\\/:*?\"<>|\x00-\x1f]+", "", name)
    name = re.sub(r"\s+", " ", name).strip()
    return name[:maxlen].strip()


def _is_http_url(value):
    if not value or not isinstance(value, str):
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class JobService:
    def __init__(self, store, pipeline, *, source_url_pattern=DEFAULT_SOURCE_URL_PATTERN):
        self.store = store
        self.pipeline = pipeline
        self._source_re = re.compile(source_url_pattern, re.IGNORECASE)
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    def validate_source_url(self, source_url):
        url = str(source_url or "").strip()
        if not url:
            raise ValidationError("sourceUrl is required")
        if not _is_http_url(url):
            raise ValidationError("Please enter a valid URL")
        if not self._source_re.search(url):
            raise ValidationError("URL is not from a supported site")
        return url

    async def submit(self, source_url, metadata=None, requested_format=None):
        """Create a pending job and start its pipeline in the background.

        Returns the freshly created record without waiting on any download.
        """
        url = self.validate_source_url(source_url)
        fmt = normalize_format(requested_format)
        metadata = dict(metadata or {})
        title = str(metadata.pop("title", "") or "").strip() or url
        extra = {key: metadata[key] for key in _METADATA_KEYS if metadata.get(key) is not None}

        record = await self.store.create(
            source_url=url,
            title=title,
            requested_format=fmt,
            metadata=extra,
        )
        log_event(logging.INFO, "job_submitted", job_id=record.id, url=url, format=fmt)

        cancel_event = asyncio.Event()
        self._cancel_events[record.id] = cancel_event
        task = asyncio.create_task(
            self.pipeline.run(record.id, url, fmt, title, cancel_event=cancel_event),
            name=f"download-job-{record.id}",
        )
        self._tasks[record.id] = task
        task.add_done_callback(self._task_done_callback(record.id))
        return record

    def _task_done_callback(self, job_id):
        def callback(task):
            self._tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Unhandled error in download task job_id=%s", job_id)
        return callback

    async def get_status(self, job_id):
        return await self.store.get(job_id)

    async def list_all(self):
        return await self.store.list_all()

    def is_running(self, job_id):
        return job_id in self._tasks

    async def wait_for(self, job_id):
        """Await the job's pipeline task, if one is still running, and return the record."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.store.get(job_id)

    async def cancel(self, job_id):
        record = await self.store.get(job_id)
        if record.is_terminal:
            return record
        event = self._cancel_events.get(job_id)
        if event is None:
            return record
        event.set()
        log_event(logging.INFO, "job_cancel_requested", job_id=job_id)
        return await self.wait_for(job_id)

    async def fetch_output_file(self, job_id):
        record = await self.store.get(job_id)
        if record.status != JOB_STATUS_COMPLETED or not record.output_location:
            logger.info("file requested for job %s with status=%s", job_id, record.status)
            raise JobNotFoundError(job_id)
        path = record.output_location
        if not os.path.isfile(path):
            log_event(logging.WARNING, "output_vanished", job_id=job_id, path=path)
            raise JobNotFoundError(job_id)
        _, ext = os.path.splitext(path)
        stem = sanitize_for_filesystem(record.title)
        filename = f"{stem}{ext}" if stem else os.path.basename(path)
        content_type, _ = mimetypes.guess_type(path)
        return OutputFile(
            path=path,
            filename=filename,
            media_type=content_type or "application/octet-stream",
        )

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def build_job_service(config=None, *, paths=None, strategies=None, sleep=None):
    """Assemble store, strategies, pipeline and service from a config dict.

    Invalid configuration (including an empty strategy list) raises
    ``ConfigurationError`` here, at startup.
    """
    runtime = build_runtime_config(config)
    paths = paths or build_engine_paths()
    store = build_job_store(runtime.store, db_path=paths.db_path)
    if strategies is None:
        strategies = build_strategies(runtime, paths)
    pipeline_kwargs = {}
    if sleep is not None:
        pipeline_kwargs["sleep"] = sleep
    pipeline = StrategyPipeline(
        store,
        strategies,
        retry_delay_seconds=runtime.retry_delay_seconds,
        attempt_timeout_seconds=runtime.attempt_timeout_seconds,
        **pipeline_kwargs,
    )
    return JobService(store, pipeline, source_url_pattern=runtime.source_url_pattern)
