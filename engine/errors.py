"""Exception types shared by the job engine and the API layer."""

from __future__ import annotations


class VidgrabError(Exception):
    """Base class for all engine errors."""


class ValidationError(VidgrabError):
    """Raised when a submission is malformed; no job is created."""


class ExtractionError(VidgrabError):
    """Raised when the metadata source cannot resolve a URL."""


class ConfigurationError(VidgrabError):
    """Raised at startup for unusable configuration."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class StorageError(VidgrabError):
    pass


class JobNotFoundError(StorageError):
    def __init__(self, job_id):
        super().__init__(f"Download not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(StorageError):
    """Raised when an update would leave a terminal state or break a record invariant."""


class AttemptFailure(VidgrabError):
    """One strategy attempt failed. Never escapes an executor."""

    def __init__(self, message, *, fatal=False):
        super().__init__(message)
        self.fatal = fatal


class ExhaustionFailure(VidgrabError):
    """Every strategy failed for a job."""


class JobCancelledError(VidgrabError):
    """Raised to abort an in-flight attempt due to user cancellation."""
