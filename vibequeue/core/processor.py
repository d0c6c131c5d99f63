"""
WorkerPoolProcessor — drives configured queues through claim → execute → resolve.

For every queue owned by the processor's role it runs:

  - `workers` poller tasks. Each tick is one batch cycle: claim up to
    `batch_size` jobs (stopping early on an empty queue), then resolve them
    one after another through the job handler.
  - exactly one scheduler task, on a slower cadence, that promotes due
    scheduled jobs into ready (and, when a stale timeout is configured,
    returns expired in_progress jobs to ready).

Pollers of the same queue coordinate only through the queue store; there is
no in-process lock. A store guarantees that one job is claimed by exactly
one poller.

Error containment
-----------------
Handler failures (falsy return, raised exception, enforced timeout) become
store.fail() calls. Store errors during claim or resolution are logged. No
per-job error ever terminates a poller or scheduler task.

Usage
-----
    processor = WorkerPoolProcessor(config, handler)
    async with processor:
        await stop_event.wait()
"""
from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable, Coroutine
from datetime import timedelta
from types import TracebackType
from typing import Any

from vibequeue.adapters.store.filesystem import DirectoryQueueStore
from vibequeue.core.heartbeat import HeartbeatManager
from vibequeue.domain.models import (
    JobState,
    ParsedQueueConfig,
    ProcessorRole,
    QueueConfig,
    QueueJob,
)
from vibequeue.observability.logging import bind_context, get_logger
from vibequeue.ports.handler import JobHandler
from vibequeue.ports.store import QueueStorePort

logger = get_logger(__name__)

StoreFactory = Callable[[str, str], QueueStorePort]


@dataclasses.dataclass
class WorkerPoolProcessor:
    """
    Runs poller and scheduler tasks for every queue owned by `role`.

    Parameters
    ----------
    config            : parsed queue configuration
    handler           : async (queue_name, job) -> bool
    role              : owns queues tagged with this role or "both"
    poll_interval     : pause between batch cycles of one poller (default 1 s)
    schedule_interval : pause between scheduler ticks (default 5 s)
    stale_timeout     : when set, running jobs heartbeat their lease and the
                        scheduler requeues in_progress jobs whose lease is older
                        than this; None leaves orphans untouched
    enforce_timeout   : cancel handler calls that exceed the queue's timeout
                        and count them as failures
    store_factory     : builds the store for (base_path, queue_name)
    """

    config: ParsedQueueConfig
    handler: JobHandler
    role: ProcessorRole = ProcessorRole.WORLD_MODEL
    poll_interval: timedelta = timedelta(seconds=1)
    schedule_interval: timedelta = timedelta(seconds=5)
    stale_timeout: timedelta | None = None
    enforce_timeout: bool = False
    store_factory: StoreFactory = DirectoryQueueStore

    _stores: dict[str, QueueStorePort] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _tasks: list[asyncio.Task[None]] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _cancelled: list[asyncio.Task[None]] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _running: bool = dataclasses.field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        for queue in self.config.for_role(self.role):
            self._stores[queue.name] = self.store_factory(
                self.config.base_path, queue.name
            )

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_names(self) -> tuple[str, ...]:
        return tuple(self._stores)

    def store(self, name: str) -> QueueStorePort:
        """The store backing queue `name`. KeyError if this processor does not own it."""
        return self._stores[name]

    async def start(self) -> None:
        """Launch poller and scheduler tasks. A second call is a no-op."""
        if self._running:
            logger.warning("Queue processor is already running")
            return

        self._running = True
        logger.info(
            "Starting queue processor",
            role=self.role.value,
            queues=len(self._stores),
        )
        for name, store in self._stores.items():
            queue = self._queue_config(name)
            for i in range(queue.workers):
                self._spawn(
                    f"vibequeue-poller-{name}-{i}", self._poll_loop(store, queue, i)
                )
            self._spawn(f"vibequeue-scheduler-{name}", self._schedule_loop(store))

    async def stop(self) -> None:
        """
        Cancel every poller and scheduler task and return immediately.

        Jobs claimed by an interrupted batch stay in in_progress.
        """
        self._running = False
        for task in self._tasks:
            task.cancel()
        self._cancelled.extend(self._tasks)
        self._tasks.clear()
        logger.info("Queue processor stopped")

    async def wait_closed(self) -> None:
        """Wait for tasks cancelled by stop() to finish unwinding."""
        cancelled, self._cancelled = self._cancelled, []
        await asyncio.gather(*cancelled, return_exceptions=True)

    async def __aenter__(self) -> "WorkerPoolProcessor":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
        await self.wait_closed()

    # ------------------------------------------------------------------ #
    # Batch cycle                                                          #
    # ------------------------------------------------------------------ #

    async def run_batch(self, name: str) -> int:
        """Run one batch cycle for queue `name`. Returns the number of jobs resolved."""
        return await self._run_batch(self._stores[name], self._queue_config(name))

    async def _run_batch(self, store: QueueStorePort, queue: QueueConfig) -> int:
        jobs: list[QueueJob] = []
        while len(jobs) < queue.batch_size:
            try:
                job = await store.claim()
            except Exception:
                logger.exception("Error claiming job", queue=queue.name)
                break
            if job is None:
                break
            jobs.append(job)

        for job in jobs:
            await self._resolve(store, queue, job)
        return len(jobs)

    async def _resolve(
        self, store: QueueStorePort, queue: QueueConfig, job: QueueJob
    ) -> None:
        lease = (
            HeartbeatManager(store, job.id, interval=self.stale_timeout / 3)
            if self.stale_timeout is not None
            else None
        )
        try:
            ok = await self._execute(queue, job, lease)
        except TimeoutError:
            logger.warning(
                "Job handler timed out",
                queue=queue.name,
                job_id=job.id,
                timeout_ms=queue.timeout_ms,
            )
            ok = False
        except Exception:
            logger.exception("Error processing job", queue=queue.name, job_id=job.id)
            ok = False

        if lease is not None and lease.lost:
            # Requeued while running; its new owner resolves it.
            logger.warning(
                "Lease lost; leaving job to its new owner",
                queue=queue.name,
                job_id=job.id,
            )
            return

        try:
            if ok:
                await store.complete(job.id)
                logger.debug("Job completed", queue=queue.name, job_id=job.id)
                return
            state = await store.fail(job.id, job, queue)
        except Exception:
            logger.exception("Error resolving job", queue=queue.name, job_id=job.id)
            return

        if state is JobState.DEAD:
            logger.error(
                "Job moved to dead letter",
                queue=queue.name,
                job_id=job.id,
                attempts=job.attempts + 1,
            )
        else:
            logger.warning(
                "Job failed; scheduled for retry",
                queue=queue.name,
                job_id=job.id,
                attempts=job.attempts + 1,
            )

    async def _execute(
        self, queue: QueueConfig, job: QueueJob, lease: HeartbeatManager | None
    ) -> bool:
        call: Coroutine[Any, Any, bool] = self.handler(queue.name, job)
        if self.enforce_timeout and queue.timeout is not None:
            call = asyncio.wait_for(call, queue.timeout.total_seconds())
        if lease is None:
            return bool(await call)
        async with lease:
            return bool(await call)

    # ------------------------------------------------------------------ #
    # Background loops                                                     #
    # ------------------------------------------------------------------ #

    async def _poll_loop(
        self, store: QueueStorePort, queue: QueueConfig, index: int
    ) -> None:
        bind_context(queue=queue.name, poller=index)
        while True:
            await self._run_batch(store, queue)
            await asyncio.sleep(self.poll_interval.total_seconds())

    async def _schedule_loop(self, store: QueueStorePort) -> None:
        bind_context(queue=store.name, poller="scheduler")
        while True:
            try:
                promoted = await store.promote_scheduled()
                if promoted:
                    logger.info("Promoted scheduled jobs", count=promoted)
                if self.stale_timeout is not None:
                    requeued = await store.requeue_stale(self.stale_timeout)
                    if requeued:
                        logger.warning("Requeued stale jobs", count=requeued)
            except Exception:
                logger.exception("Error processing scheduled jobs", queue=store.name)
            await asyncio.sleep(self.schedule_interval.total_seconds())

    # ------------------------------------------------------------------ #
    # Internal helpers                                                     #
    # ------------------------------------------------------------------ #

    def _spawn(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    def _queue_config(self, name: str) -> QueueConfig:
        queue = self.config.queue(name)
        if queue is None:
            raise KeyError(name)
        return queue
