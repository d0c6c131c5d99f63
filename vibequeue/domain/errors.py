"""
Exception hierarchy for vibequeue.

VibeQueueError
├── JobNotFoundError    — job_id not present in the expected state directory
├── MalformedJobError   — on-disk record that cannot be decoded
├── StorageError        — underlying I/O failure (wraps original exception)
└── ConfigurationError  — invalid queue configuration (fatal at startup)
"""

from __future__ import annotations


class VibeQueueError(Exception):
    """Base class for all vibequeue exceptions."""


class JobNotFoundError(VibeQueueError):
    """Raised when a job_id is not present where the operation expects it."""

    def __init__(self, job_id: str, state: str | None = None) -> None:
        self.job_id = job_id
        self.state = state
        where = f" in {state!r}" if state else ""
        super().__init__(f"Job {job_id!r} not found{where}")


class MalformedJobError(VibeQueueError):
    """
    Raised when a record on disk cannot be decoded into a QueueJob.

    The record is never deleted; it stays where it is for manual recovery.

    Attributes
    ----------
    path : str
        Location of the offending record.
    cause : Exception
        The original decode / validation error.
    """

    def __init__(self, path: str, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Malformed job record {path}: {cause}")


class StorageError(VibeQueueError):
    """
    Wraps an underlying I/O failure from a queue store.

    Attributes
    ----------
    cause : Exception
        The original exception from the storage backend.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class ConfigurationError(VibeQueueError):
    """Raised when the queue configuration cannot be parsed or validated."""
