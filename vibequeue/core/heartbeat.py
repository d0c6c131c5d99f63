"""
HeartbeatManager — async context manager for background lease refreshes.

While a handler runs, the processor wraps the call in HeartbeatManager so
that the claimed job's lease keeps moving forward and the scheduler's
requeue_stale() sweep does not hand the job to another poller.

Usage
-----
    job = await store.claim()
    async with HeartbeatManager(store, job.id, interval=timedelta(seconds=30)):
        ok = await handler(store.name, job)

If the handler raises, the heartbeat task is cancelled on exit.

A refresh that finds the job gone from in_progress means the sweep (or an
operator) handed it elsewhere: the lease is lost, `lost` becomes True and
the refreshes stop. The caller must then leave the job alone. Transient
storage errors are logged and the next refresh is tried as usual.

HeartbeatManager is typed against the structural Protocol _HasHeartbeat, so
it works with any queue store without a shared base class.
"""
from __future__ import annotations

import asyncio
import dataclasses
from datetime import timedelta
from types import TracebackType
from typing import Protocol

from vibequeue.domain.errors import JobNotFoundError, StorageError
from vibequeue.observability.logging import get_logger

logger = get_logger(__name__)


class _HasHeartbeat(Protocol):
    """Structural Protocol — any object with an async heartbeat(job_id) method."""

    async def heartbeat(self, job_id: str) -> None: ...


@dataclasses.dataclass
class HeartbeatManager:
    """
    Refreshes the lease of a single in_progress job.

    Parameters
    ----------
    store    : any object with async heartbeat(job_id: str) -> None
    job_id   : the job to keep alive
    interval : time between lease refreshes (default 60 seconds)
    """

    store: _HasHeartbeat
    job_id: str
    interval: timedelta = timedelta(seconds=60)

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _lost: bool = dataclasses.field(default=False, init=False, repr=False)

    @property
    def lost(self) -> bool:
        """True once a refresh found the job no longer in_progress."""
        return self._lost

    async def __aenter__(self) -> HeartbeatManager:
        self._task = asyncio.create_task(
            self._beat(), name=f"vibequeue-heartbeat-{self.job_id}"
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                await self.store.heartbeat(self.job_id)
            except JobNotFoundError:
                self._lost = True
                logger.warning("Lease lost", job_id=self.job_id)
                return
            except StorageError as exc:
                logger.warning(
                    "Lease refresh failed; retrying",
                    job_id=self.job_id,
                    error=str(exc),
                )
