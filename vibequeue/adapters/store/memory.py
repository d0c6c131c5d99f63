"""
InMemoryQueueStore — asyncio.Lock-based queue store for testing and development.

Keeps one dict of jobs per state. An asyncio.Lock serializes every
transition, standing in for the atomic rename of DirectoryQueueStore: a job
is removed from one state dict and inserted into the next inside the same
critical section, so it is never visible in two states.

Leases are time.monotonic() timestamps kept beside the in_progress dict.

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop. NOT safe across processes or threads.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from vibequeue.domain.errors import JobNotFoundError
from vibequeue.domain.models import JobState, QueueConfig, QueueJob


@dataclasses.dataclass
class InMemoryQueueStore:
    """
    In-process queue store.

    Parameters
    ----------
    base_path : accepted for signature parity with DirectoryQueueStore; unused
    name      : queue name
    """

    base_path: str = "memory"
    name: str = "default"

    def __post_init__(self) -> None:
        self._jobs: dict[JobState, dict[str, QueueJob]] = {s: {} for s in JobState}
        self._leases: dict[str, float] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def enqueue(
        self, payload: Any, scheduled_for: datetime | None = None
    ) -> str:
        job = QueueJob.new(payload, scheduled_for)
        state = JobState.READY if scheduled_for is None else JobState.SCHEDULED
        async with self._lock:
            if self._locate(job.id) is not None:
                raise ValueError(f"duplicate job id {job.id!r}")
            self._jobs[state][job.id] = job
        return job.id

    async def claim(self) -> QueueJob | None:
        async with self._lock:
            ready = self._jobs[JobState.READY]
            if not ready:
                return None
            job_id = min(ready)
            job = ready.pop(job_id)
            self._jobs[JobState.IN_PROGRESS][job_id] = job
            self._leases[job_id] = time.monotonic()
            return job

    async def complete(self, job_id: str) -> None:
        async with self._lock:
            job = self._jobs[JobState.IN_PROGRESS].pop(job_id, None)
            if job is None:
                return
            self._leases.pop(job_id, None)
            self._jobs[JobState.DONE][job_id] = job

    async def fail(self, job_id: str, job: QueueJob, config: QueueConfig) -> JobState:
        async with self._lock:
            if self._jobs[JobState.IN_PROGRESS].pop(job_id, None) is None:
                raise JobNotFoundError(job_id, JobState.IN_PROGRESS.value)
            self._leases.pop(job_id, None)
            failed = job.with_attempt()
            if failed.attempts >= config.max_retries:
                self._jobs[JobState.DEAD][job_id] = failed.with_schedule(None)
                return JobState.DEAD
            self._jobs[JobState.SCHEDULED][job_id] = failed.with_schedule(
                datetime.now(timezone.utc) + config.retry_delay(failed.attempts)
            )
            return JobState.SCHEDULED

    async def promote_scheduled(self) -> int:
        now = datetime.now(timezone.utc)
        async with self._lock:
            scheduled = self._jobs[JobState.SCHEDULED]
            due = [job_id for job_id, job in scheduled.items() if job.is_due(now)]
            for job_id in due:
                self._jobs[JobState.READY][job_id] = scheduled.pop(job_id)
            return len(due)

    async def heartbeat(self, job_id: str) -> None:
        async with self._lock:
            if job_id not in self._jobs[JobState.IN_PROGRESS]:
                raise JobNotFoundError(job_id, JobState.IN_PROGRESS.value)
            self._leases[job_id] = time.monotonic()

    async def requeue_stale(self, timeout: timedelta) -> int:
        cutoff = time.monotonic() - timeout.total_seconds()
        async with self._lock:
            stale = [j for j, ts in self._leases.items() if ts < cutoff]
            for job_id in stale:
                del self._leases[job_id]
                self._jobs[JobState.READY][job_id] = self._jobs[
                    JobState.IN_PROGRESS
                ].pop(job_id)
            return len(stale)

    async def list_ids(self, state: JobState) -> list[str]:
        async with self._lock:
            return sorted(self._jobs[state])

    async def read(self, state: JobState, job_id: str) -> QueueJob:
        async with self._lock:
            job = self._jobs[state].get(job_id)
        if job is None:
            raise JobNotFoundError(job_id, state.value)
        return job

    async def counts(self) -> dict[JobState, int]:
        async with self._lock:
            return {state: len(jobs) for state, jobs in self._jobs.items()}

    async def locate(self, job_id: str) -> JobState | None:
        async with self._lock:
            return self._locate(job_id)

    def _locate(self, job_id: str) -> JobState | None:
        return next((s for s, jobs in self._jobs.items() if job_id in jobs), None)
