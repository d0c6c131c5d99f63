import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from vibequeue.adapters.store.filesystem import DirectoryQueueStore
from vibequeue.adapters.store.memory import InMemoryQueueStore
from vibequeue.core.processor import WorkerPoolProcessor
from vibequeue.domain.errors import StorageError
from vibequeue.domain.models import JobState, ParsedQueueConfig, ProcessorRole, QueueJob

FAST = timedelta(milliseconds=10)

# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


class _RecordingHandler:
    def __init__(
        self,
        result: bool = True,
        exc: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.calls: list[tuple[str, str]] = []
        self.result = result
        self.exc = exc
        self.delay = delay

    async def __call__(self, queue_name: str, job: QueueJob) -> bool:
        self.calls.append((queue_name, job.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


def _config(tmp_path: Path, **queue: object) -> ParsedQueueConfig:
    return ParsedQueueConfig.model_validate(
        {"basePath": str(tmp_path), "queues": [{"name": "jobs", **queue}]}
    )


async def _wait_for(predicate: Callable[[], Awaitable[bool]], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not await predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _in(store, state: JobState, n: int = 1) -> Callable[[], Awaitable[bool]]:
    async def _check() -> bool:
        return len(await store.list_ids(state)) >= n

    return _check


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_owns_queues_for_role(tmp_path: Path) -> None:
    config = ParsedQueueConfig.model_validate(
        {
            "basePath": str(tmp_path),
            "queues": [
                {"name": "ingest", "processorRole": "world-model"},
                {"name": "metrics", "processorRole": "both"},
                {"name": "render", "processorRole": "views"},
            ],
        }
    )
    processor = WorkerPoolProcessor(config, _RecordingHandler())
    assert processor.queue_names == ("ingest", "metrics")
    assert isinstance(processor.store("ingest"), DirectoryQueueStore)
    assert (tmp_path / "ingest" / "ready").is_dir()
    assert not (tmp_path / "render").exists()

    views = WorkerPoolProcessor(config, _RecordingHandler(), role=ProcessorRole.VIEWS)
    assert views.queue_names == ("metrics", "render")


def test_store_for_unowned_queue_raises(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(_config(tmp_path), _RecordingHandler())
    with pytest.raises(KeyError):
        processor.store("other")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_start_launches_pollers_and_one_scheduler(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(_config(tmp_path, workers=3), _RecordingHandler())
    await processor.start()
    try:
        names = sorted(t.get_name() for t in processor._tasks)
        assert names == [
            "vibequeue-poller-jobs-0",
            "vibequeue-poller-jobs-1",
            "vibequeue-poller-jobs-2",
            "vibequeue-scheduler-jobs",
        ]
        assert processor.running
    finally:
        await processor.stop()
        await processor.wait_closed()
    assert not processor.running


async def test_start_twice_is_noop(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(_config(tmp_path, workers=2), _RecordingHandler())
    await processor.start()
    await processor.start()
    try:
        assert len(processor._tasks) == 3
    finally:
        await processor.stop()
        await processor.wait_closed()


async def test_stop_cancels_tasks(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(_config(tmp_path), _RecordingHandler())
    await processor.start()
    tasks = list(processor._tasks)
    await processor.stop()
    await processor.wait_closed()
    assert all(t.cancelled() for t in tasks)
    assert processor._tasks == []


async def test_stop_abandons_in_flight_job(tmp_path: Path) -> None:
    handler = _RecordingHandler(delay=60)
    processor = WorkerPoolProcessor(
        _config(tmp_path), handler, poll_interval=FAST, schedule_interval=FAST
    )
    store = processor.store("jobs")
    job_id = await store.enqueue("slow")

    await processor.start()
    await _wait_for(_in(store, JobState.IN_PROGRESS))
    await processor.stop()
    await processor.wait_closed()

    assert await store.locate(job_id) is JobState.IN_PROGRESS


async def test_async_context_manager(tmp_path: Path) -> None:
    handler = _RecordingHandler()
    async with WorkerPoolProcessor(
        _config(tmp_path), handler, poll_interval=FAST, schedule_interval=FAST
    ) as processor:
        store = processor.store("jobs")
        job_id = await store.enqueue({"n": 1})
        await _wait_for(_in(store, JobState.DONE))
    assert not processor.running
    assert handler.calls == [("jobs", job_id)]


# ---------------------------------------------------------------------------
# Batch cycle
# ---------------------------------------------------------------------------


async def test_run_batch_empty_queue(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(_config(tmp_path), _RecordingHandler())
    assert await processor.run_batch("jobs") == 0


async def test_run_batch_respects_batch_size(tmp_path: Path) -> None:
    handler = _RecordingHandler()
    processor = WorkerPoolProcessor(_config(tmp_path, batchSize=3), handler)
    store = processor.store("jobs")
    for i in range(5):
        await store.enqueue(i)

    assert await processor.run_batch("jobs") == 3
    assert len(handler.calls) == 3
    assert await processor.run_batch("jobs") == 2
    assert len(await store.list_ids(JobState.DONE)) == 5


async def test_batch_resolved_in_claim_order(tmp_path: Path) -> None:
    handler = _RecordingHandler()
    processor = WorkerPoolProcessor(_config(tmp_path, batchSize=10), handler)
    store = processor.store("jobs")
    ids = []
    for i in range(4):
        ids.append(await store.enqueue(i))
        await asyncio.sleep(0.002)

    await processor.run_batch("jobs")
    assert [job_id for _, job_id in handler.calls] == ids


async def test_handler_false_schedules_retry(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path, retryBaseDelayMs=60_000), _RecordingHandler(result=False)
    )
    store = processor.store("jobs")
    job_id = await store.enqueue("x")

    await processor.run_batch("jobs")
    assert await store.locate(job_id) is JobState.SCHEDULED
    assert (await store.read(JobState.SCHEDULED, job_id)).attempts == 1


async def test_handler_exception_is_treated_as_failure(tmp_path: Path) -> None:
    handler = _RecordingHandler(exc=RuntimeError("boom"))
    processor = WorkerPoolProcessor(
        _config(tmp_path, batchSize=2, retryBaseDelayMs=60_000), handler
    )
    store = processor.store("jobs")
    first = await store.enqueue("a")
    second = await store.enqueue("b")

    assert await processor.run_batch("jobs") == 2
    assert await store.locate(first) is JobState.SCHEDULED
    assert await store.locate(second) is JobState.SCHEDULED


async def test_poller_survives_handler_errors(tmp_path: Path) -> None:
    handler = _RecordingHandler(exc=RuntimeError("boom"))
    async with WorkerPoolProcessor(
        _config(tmp_path, maxRetries=2, retryBaseDelayMs=0),
        handler,
        poll_interval=FAST,
        schedule_interval=FAST,
    ) as processor:
        store = processor.store("jobs")
        job_id = await store.enqueue("doomed")
        await _wait_for(_in(store, JobState.DEAD))

    assert await store.locate(job_id) is JobState.DEAD
    assert (await store.read(JobState.DEAD, job_id)).attempts == 2
    assert len(handler.calls) == 2


async def test_two_pollers_one_job_resolved_once(tmp_path: Path) -> None:
    handler = _RecordingHandler(delay=0.05)
    async with WorkerPoolProcessor(
        _config(tmp_path, workers=2),
        handler,
        poll_interval=FAST,
        schedule_interval=FAST,
    ) as processor:
        store = processor.store("jobs")
        job_id = await store.enqueue("once")
        await _wait_for(_in(store, JobState.DONE))
        await asyncio.sleep(0.1)

    assert handler.calls == [("jobs", job_id)]
    assert await store.list_ids(JobState.DONE) == [job_id]


async def test_scheduled_job_processed_after_promotion(tmp_path: Path) -> None:
    handler = _RecordingHandler()
    async with WorkerPoolProcessor(
        _config(tmp_path), handler, poll_interval=FAST, schedule_interval=FAST
    ) as processor:
        store = processor.store("jobs")
        job_id = await store.enqueue(
            "delayed", datetime.now(UTC) + timedelta(milliseconds=200)
        )
        await asyncio.sleep(0.05)
        assert handler.calls == []
        await _wait_for(_in(store, JobState.DONE))

    assert handler.calls == [("jobs", job_id)]


# ---------------------------------------------------------------------------
# Store errors are contained
# ---------------------------------------------------------------------------


class _FlakyStore(InMemoryQueueStore):
    def __post_init__(self) -> None:
        super().__post_init__()
        self.claim_failures = 1
        self.complete_failures = 1

    async def claim(self):
        if self.claim_failures:
            self.claim_failures -= 1
            raise StorageError("claim failed", OSError("disk on fire"))
        return await super().claim()

    async def complete(self, job_id: str) -> None:
        if self.complete_failures:
            self.complete_failures -= 1
            raise StorageError("complete failed", OSError("disk on fire"))
        await super().complete(job_id)


async def test_claim_error_does_not_escape(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path), _RecordingHandler(), store_factory=_FlakyStore
    )
    store = processor.store("jobs")
    await store.enqueue("x")
    assert await processor.run_batch("jobs") == 0
    assert await processor.run_batch("jobs") == 1


async def test_resolve_error_does_not_escape(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path), _RecordingHandler(), store_factory=_FlakyStore
    )
    store = processor.store("jobs")
    store.claim_failures = 0
    job_id = await store.enqueue("x")
    assert await processor.run_batch("jobs") == 1
    assert await store.locate(job_id) is JobState.IN_PROGRESS


# ---------------------------------------------------------------------------
# Timeouts and leases
# ---------------------------------------------------------------------------


async def test_timeout_is_informational_by_default(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path, timeoutMs=10), _RecordingHandler(delay=0.05)
    )
    store = processor.store("jobs")
    job_id = await store.enqueue("x")
    await processor.run_batch("jobs")
    assert await store.locate(job_id) is JobState.DONE


async def test_enforced_timeout_fails_job(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path, timeoutMs=20, retryBaseDelayMs=60_000),
        _RecordingHandler(delay=5),
        enforce_timeout=True,
    )
    store = processor.store("jobs")
    job_id = await store.enqueue("x")
    await processor.run_batch("jobs")
    assert await store.locate(job_id) is JobState.SCHEDULED


async def test_heartbeat_keeps_running_job_leased(tmp_path: Path) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path),
        _RecordingHandler(delay=0.3),
        stale_timeout=timedelta(milliseconds=90),
        store_factory=InMemoryQueueStore,
    )
    store = processor.store("jobs")
    job_id = await store.enqueue("long")

    batch = asyncio.create_task(processor.run_batch("jobs"))
    requeued = 0
    while not batch.done():
        await asyncio.sleep(0.02)
        requeued += await store.requeue_stale(timedelta(milliseconds=90))
    await batch

    assert requeued == 0
    assert await store.locate(job_id) is JobState.DONE


class _SweepingStore(InMemoryQueueStore):
    """Requeues every in_progress job just before each lease refresh."""

    async def heartbeat(self, job_id: str) -> None:
        await self.requeue_stale(timedelta(0))
        await super().heartbeat(job_id)


@pytest.mark.parametrize("result", [True, False])
async def test_lost_lease_leaves_job_to_new_owner(tmp_path: Path, result: bool) -> None:
    processor = WorkerPoolProcessor(
        _config(tmp_path),
        _RecordingHandler(result=result, delay=0.1),
        stale_timeout=timedelta(milliseconds=30),
        store_factory=_SweepingStore,
    )
    store = processor.store("jobs")
    job_id = await store.enqueue("x")

    assert await processor.run_batch("jobs") == 1
    assert await store.locate(job_id) is JobState.READY
    job = await store.claim()
    assert job.attempts == 0


async def test_scheduler_requeues_orphaned_job(tmp_path: Path) -> None:
    config = _config(tmp_path)
    orphan_store = DirectoryQueueStore(tmp_path, "jobs")
    job_id = await orphan_store.enqueue("orphan")
    await orphan_store.claim()
    old = time.time() - 3600
    os.utime(tmp_path / "jobs" / "in_progress" / f"{job_id}.json", (old, old))

    handler = _RecordingHandler()
    async with WorkerPoolProcessor(
        config,
        handler,
        poll_interval=FAST,
        schedule_interval=FAST,
        stale_timeout=timedelta(seconds=60),
    ) as processor:
        await _wait_for(_in(processor.store("jobs"), JobState.DONE))

    assert handler.calls == [("jobs", job_id)]


async def test_orphans_untouched_without_stale_timeout(tmp_path: Path) -> None:
    orphan_store = DirectoryQueueStore(tmp_path, "jobs")
    job_id = await orphan_store.enqueue("orphan")
    await orphan_store.claim()
    old = time.time() - 3600
    os.utime(tmp_path / "jobs" / "in_progress" / f"{job_id}.json", (old, old))

    async with WorkerPoolProcessor(
        _config(tmp_path),
        _RecordingHandler(),
        poll_interval=FAST,
        schedule_interval=FAST,
    ):
        await asyncio.sleep(0.1)

    assert await orphan_store.locate(job_id) is JobState.IN_PROGRESS
