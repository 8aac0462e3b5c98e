"""Contract shared by the pipeline and every strategy executor.

An executor receives an ``AttemptReporter`` bound to one job and one attempt.
It pushes progress through the reporter while it works and calls
``complete`` once a file exists; it returns an ``AttemptOutcome`` either way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from engine.errors import InvalidTransitionError
from engine.job_store import JOB_STATUS_COMPLETED

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRYABLE = "retryable"
OUTCOME_FATAL = "fatal"

PROGRESS_MARKER = "vidgrab-progress:"
# Fields: downloaded | total | total estimate | speed | eta | percent
PROGRESS_TEMPLATE = (
    "download:" + PROGRESS_MARKER
    + "%(progress.downloaded_bytes)s|%(progress.total_bytes)s|"
    "%(progress.total_bytes_estimate)s|%(progress.speed)s|"
    "%(progress.eta)s|%(progress._percent_str)s"
)

# Messages meaning the media itself cannot be fetched by any client profile.
_UNAVAILABLE_SIGNAL_MAP: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "removed_or_deleted",
        (
            "has been removed by the uploader",
            "video has been removed",
            "account associated with this video has been terminated",
        ),
    ),
    (
        "private_or_members_only",
        (
            "private video",
            "this video is private",
            "members-only",
            "members only",
            "join this channel",
        ),
    ),
    (
        "drm_protected",
        (
            "drm protected",
        ),
    ),
)


@dataclass(frozen=True)
class AttemptOutcome:
    kind: str
    output_location: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OUTCOME_SUCCEEDED

    @property
    def fatal(self) -> bool:
        return self.kind == OUTCOME_FATAL

    @classmethod
    def succeeded(cls, output_location):
        return cls(OUTCOME_SUCCEEDED, output_location=str(output_location))

    @classmethod
    def retryable(cls, error):
        return cls(OUTCOME_RETRYABLE, error=str(error))

    @classmethod
    def failed_fatally(cls, error):
        return cls(OUTCOME_FATAL, error=str(error))


def classify_unavailability(message):
    """Return the unavailability class for a yt-dlp error message, if any."""
    lowered = str(message or "").lower()
    for label, signals in _UNAVAILABLE_SIGNAL_MAP:
        if any(signal in lowered for signal in signals):
            return label
    return None


def outcome_for_error(error):
    message = str(error) or error.__class__.__name__
    unavailable = classify_unavailability(message)
    if unavailable:
        return AttemptOutcome.failed_fatally(f"source_unavailable:{unavailable}: {message}")
    return AttemptOutcome.retryable(message)


def _parse_int_or_none(value):
    raw = str(value or "").strip()
    if not raw or raw.lower() in {"none", "na", "n/a", "null"}:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def _parse_float_or_none(value):
    raw = str(value or "").strip()
    if not raw or raw.lower() in {"none", "na", "n/a", "null"}:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_progress_line(line):
    """Parse one ``--progress-template`` line; other output yields ``None``."""
    if not line or PROGRESS_MARKER not in line:
        return None
    payload = line.split(PROGRESS_MARKER, 1)[1].strip()
    parts = [part.strip() for part in payload.split("|")]
    if len(parts) < 6:
        return None

    downloaded_bytes = _parse_int_or_none(parts[0])
    total_bytes = _parse_int_or_none(parts[1]) or _parse_int_or_none(parts[2])
    percent = _parse_float_or_none(parts[5].replace("%", ""))
    if percent is None and downloaded_bytes is not None and total_bytes:
        percent = (float(downloaded_bytes) / float(total_bytes)) * 100.0
    if percent is None:
        return None
    return {
        "downloaded_bytes": downloaded_bytes,
        "total_bytes": total_bytes,
        "speed_bps": _parse_float_or_none(parts[3]),
        "eta_seconds": _parse_int_or_none(parts[4]),
        "progress_percent": max(0.0, min(100.0, percent)),
    }


def percent_from_hook(status):
    """Percentage from a yt-dlp ``progress_hooks`` payload."""
    if not isinstance(status, dict) or status.get("status") != "downloading":
        return None
    downloaded = status.get("downloaded_bytes")
    total = status.get("total_bytes") or status.get("total_bytes_estimate")
    if not downloaded or not total:
        return None
    return max(0.0, min(100.0, (float(downloaded) / float(total)) * 100.0))


class AttemptReporter:
    """Writes one attempt's progress and completion into the record store.

    Progress is kept non-decreasing for the attempt and capped at 99 until
    ``complete`` records the output location. Updates that arrive after the
    job reached a terminal state are dropped.
    """

    def __init__(self, store, job_id, *, strategy=None):
        self.store = store
        self.job_id = job_id
        self.strategy = strategy
        self._last_percent = 0
        self.completed_location = None

    @property
    def last_percent(self):
        return self._last_percent

    async def progress(self, percent):
        if percent is None:
            return
        value = max(0, min(99, int(percent)))
        if value <= self._last_percent or self.completed_location is not None:
            return
        try:
            await self.store.update(self.job_id, progress=value)
        except InvalidTransitionError:
            logger.debug("progress dropped for job %s at %s%%", self.job_id, value)
            return
        self._last_percent = value

    async def complete(self, output_location):
        record = await self.store.update(
            self.job_id,
            status=JOB_STATUS_COMPLETED,
            progress=100,
            output_location=str(output_location),
            strategy=self.strategy,
            last_error=None,
        )
        self._last_percent = 100
        self.completed_location = record.output_location
        return record
