"""
QueueStorePort — the storage port of vibequeue.

Any object satisfying this structural Protocol can back a queue. No base
class or registration is required — Python's structural subtyping
(duck typing + Protocol) is sufficient.

State-machine contract
----------------------
A job lives in exactly one of five states at any instant:

  enqueue ──> ready ──claim──> in_progress ──complete──> done
     │          ▲                   │
     │          │ promote_scheduled │ fail (attempts < max_retries)
     └──> scheduled <───────────────┘
                                    │ fail (attempts >= max_retries)
                                    └──> dead

claim() is the only mutual-exclusion point: moving a job out of `ready` must
be a single atomic relocate-or-lose step. A claimant that loses the race
moves on to the next candidate; it never returns a job it did not move.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from vibequeue.domain.models import JobState, QueueConfig, QueueJob


@runtime_checkable
class QueueStorePort(Protocol):
    """
    Interface required by the worker-pool processor and the CLI.

    Implementing adapters (built-in):
      - DirectoryQueueStore  — one directory per state, os.rename as the mutex
      - InMemoryQueueStore   — asyncio.Lock-based, for testing
    """

    name: str

    async def enqueue(
        self, payload: Any, scheduled_for: datetime | None = None
    ) -> str:
        """
        Store a new job in `ready`, or in `scheduled` when scheduled_for is given.

        Returns the generated job id. Never overwrites an existing record.
        """
        ...

    async def claim(self) -> QueueJob | None:
        """
        Atomically move the oldest claimable job from `ready` to `in_progress`.

        Returns None when nothing could be claimed.
        """
        ...

    async def complete(self, job_id: str) -> None:
        """Move a job from `in_progress` to `done`. No-op if it is not there."""
        ...

    async def fail(self, job_id: str, job: QueueJob, config: QueueConfig) -> JobState:
        """
        Record a failed attempt.

        Moves the job to `dead` once attempts reach config.max_retries,
        otherwise to `scheduled` with linear back-off. Returns the new state.

        Raises
        ------
        JobNotFoundError  if the job is no longer in `in_progress`
        """
        ...

    async def promote_scheduled(self) -> int:
        """Move every due job from `scheduled` to `ready`. Returns the count."""
        ...

    async def heartbeat(self, job_id: str) -> None:
        """
        Refresh the lease of an `in_progress` job.

        Raises
        ------
        JobNotFoundError  if the job is no longer in `in_progress`
        """
        ...

    async def requeue_stale(self, timeout: timedelta) -> int:
        """Move `in_progress` jobs whose lease is older than timeout back to `ready`."""
        ...

    async def list_ids(self, state: JobState) -> list[str]:
        """Job ids currently in `state`, in claim order."""
        ...

    async def read(self, state: JobState, job_id: str) -> QueueJob:
        """Read a single job from `state`."""
        ...

    async def counts(self) -> dict[JobState, int]:
        """Number of jobs per state."""
        ...

    async def locate(self, job_id: str) -> JobState | None:
        """The state a job currently resides in, or None if it is unknown."""
        ...
