"""
DirectoryQueueStore — a queue as a tree of state directories.

Every job is one JSON file; its state is the directory it sits in:

  <base_path>/<name>/ready/<id>.json
  <base_path>/<name>/in_progress/<id>.json
  <base_path>/<name>/scheduled/<id>.json
  <base_path>/<name>/done/<id>.json
  <base_path>/<name>/dead/<id>.json

Two processes pointing at the same base path share the queue.

Rename as mutex
---------------
os.rename() within one filesystem is atomic: exactly one of several
concurrent renames of the same source succeeds, the others get
FileNotFoundError. claim(), complete(), promote_scheduled() and
requeue_stale() are all single renames, so a record can never be visible in
two state directories at once and a crash can never duplicate it.

Writes
------
New records are written to a hidden temp file in the target directory and
published with os.link(), which refuses to overwrite an existing name.
fail() first renames the record to a hidden `.<id>.failing` name inside
in_progress, which takes it out of reach of claim, heartbeat and the
requeue_stale() sweep. It then rewrites that private file and renames it
into scheduled or dead. A crash in between leaves the hidden file behind;
requeue_stale() returns it to ready once it is older than the timeout.

Leases
------
The mtime of an in_progress file is its lease. claim() stamps it,
heartbeat() refreshes it and requeue_stale() returns expired ones to ready.

POSIX-only (Linux, macOS). Not compatible with NFS or distributed filesystems.
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

from vibequeue.core import codec
from vibequeue.domain.errors import (
    JobNotFoundError,
    MalformedJobError,
    StorageError,
)
from vibequeue.domain.models import (
    JobState,
    QueueConfig,
    QueueJob,
    check_queue_name,
)
from vibequeue.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_MAX_ID_ATTEMPTS: int = 5
_FAILING_SUFFIX: str = ".failing"


@dataclasses.dataclass
class DirectoryQueueStore:
    """
    Stores one named queue under `<base_path>/<name>`.

    Parameters
    ----------
    base_path : root directory shared by all queues
    name      : queue name (also the directory name); ValueError if it
                contains a path separator or is "." or ".."

    The five state directories are created on construction if absent.
    """

    base_path: Path
    name: str
    root: Path

    def __init__(self, base_path: str | Path, name: str) -> None:
        self.base_path = Path(base_path)
        self.name = check_queue_name(name)
        self.root = self.base_path / name
        for state in JobState:
            (self.root / state.value).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------ #
    # State transitions                                                    #
    # ------------------------------------------------------------------ #

    async def enqueue(
        self, payload: Any, scheduled_for: datetime | None = None
    ) -> str:
        """Write a new job into ready (or scheduled). Returns its id."""
        return await self._run("enqueue", self._sync_enqueue, payload, scheduled_for)

    async def claim(self) -> QueueJob | None:
        """Move the first claimable job in ready to in_progress."""
        return await self._run("claim", self._sync_claim)

    async def complete(self, job_id: str) -> None:
        """Move a job from in_progress to done. No-op if it is not there."""
        await self._run("complete", self._sync_complete, job_id)

    async def fail(self, job_id: str, job: QueueJob, config: QueueConfig) -> JobState:
        """Record a failed attempt; returns JobState.SCHEDULED or JobState.DEAD."""
        return await self._run("fail", self._sync_fail, job_id, job, config)

    async def promote_scheduled(self) -> int:
        """Move every due job from scheduled to ready. Returns the count."""
        return await self._run("promote_scheduled", self._sync_promote)

    async def heartbeat(self, job_id: str) -> None:
        """Refresh the lease of an in_progress job."""
        await self._run("heartbeat", self._sync_heartbeat, job_id)

    async def requeue_stale(self, timeout: timedelta) -> int:
        """Return in_progress jobs with a lease older than `timeout` to ready."""
        return await self._run("requeue_stale", self._sync_requeue_stale, timeout)

    # ------------------------------------------------------------------ #
    # Inspection                                                           #
    # ------------------------------------------------------------------ #

    async def list_ids(self, state: JobState) -> list[str]:
        return await self._run("list_ids", self._ids, state)

    async def read(self, state: JobState, job_id: str) -> QueueJob:
        return await self._run("read", self._sync_read, state, job_id)

    async def counts(self) -> dict[JobState, int]:
        return await self._run(
            "counts", lambda: {state: len(self._ids(state)) for state in JobState}
        )

    async def locate(self, job_id: str) -> JobState | None:
        def _fn() -> JobState | None:
            return next(
                (s for s in JobState if self._path(s, job_id).exists()), None
            )

        return await self._run("locate", _fn)

    # ------------------------------------------------------------------ #
    # Synchronous implementations (executed in a thread-pool worker)      #
    # ------------------------------------------------------------------ #

    async def _run(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as exc:
            raise StorageError(f"{op} on queue {self.name!r} failed", exc) from exc

    def _dir(self, state: JobState) -> Path:
        return self.root / state.value

    def _path(self, state: JobState, job_id: str) -> Path:
        return self._dir(state) / codec.filename(job_id)

    def _ids(self, state: JobState) -> list[str]:
        ids = (codec.job_id_of(n) for n in os.listdir(self._dir(state)))
        return sorted(i for i in ids if i is not None)

    def _load(self, path: Path, job_id: str) -> QueueJob:
        return codec.decode(path.read_bytes(), str(path), expected_id=job_id)

    def _sync_read(self, state: JobState, job_id: str) -> QueueJob:
        try:
            return self._load(self._path(state, job_id), job_id)
        except FileNotFoundError as exc:
            raise JobNotFoundError(job_id, state.value) from exc

    @staticmethod
    def _write_temp(directory: Path, data: bytes) -> Path:
        tmp = directory / f".{uuid.uuid4().hex}.tmp"
        with open(tmp, "xb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        return tmp

    def _publish(self, path: Path, data: bytes) -> None:
        """Create `path` with `data`; FileExistsError if the name is taken."""
        tmp = self._write_temp(path.parent, data)
        try:
            os.link(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    def _rewrite(self, path: Path, data: bytes) -> None:
        tmp = self._write_temp(path.parent, data)
        try:
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def _sync_enqueue(self, payload: Any, scheduled_for: datetime | None) -> str:
        state = JobState.READY if scheduled_for is None else JobState.SCHEDULED
        for _ in range(_MAX_ID_ATTEMPTS):
            job = QueueJob.new(payload, scheduled_for)
            try:
                self._publish(self._path(state, job.id), codec.encode(job))
            except FileExistsError:
                continue
            logger.debug(
                "Job enqueued", queue=self.name, job_id=job.id, state=state.value
            )
            return job.id
        raise StorageError(
            f"enqueue on queue {self.name!r} failed",
            FileExistsError("could not allocate a unique job id"),
        )

    def _sync_claim(self) -> QueueJob | None:
        for job_id in self._ids(JobState.READY):
            src = self._path(JobState.READY, job_id)
            try:
                job = self._load(src, job_id)
            except FileNotFoundError:
                continue
            except MalformedJobError as exc:
                logger.warning(
                    "Skipping malformed job", queue=self.name, path=exc.path,
                    error=str(exc.cause),
                )
                continue
            try:
                os.utime(src)
                os.rename(src, self._path(JobState.IN_PROGRESS, job_id))
            except FileNotFoundError:
                logger.debug("Lost claim race", queue=self.name, job_id=job_id)
                continue
            return job
        return None

    def _sync_complete(self, job_id: str) -> None:
        try:
            os.rename(
                self._path(JobState.IN_PROGRESS, job_id),
                self._path(JobState.DONE, job_id),
            )
        except FileNotFoundError:
            logger.debug(
                "Job not in progress; nothing to complete",
                queue=self.name,
                job_id=job_id,
            )

    def _failing_path(self, job_id: str) -> Path:
        return self._dir(JobState.IN_PROGRESS) / f".{job_id}{_FAILING_SUFFIX}"

    def _sync_fail(self, job_id: str, job: QueueJob, config: QueueConfig) -> JobState:
        src = self._path(JobState.IN_PROGRESS, job_id)
        private = self._failing_path(job_id)
        try:
            # Fresh mtime so the sweep does not recover the private copy.
            os.utime(src)
            os.rename(src, private)
        except FileNotFoundError as exc:
            raise JobNotFoundError(job_id, JobState.IN_PROGRESS.value) from exc

        failed = job.with_attempt()
        if failed.attempts >= config.max_retries:
            target = JobState.DEAD
            failed = failed.with_schedule(None)
        else:
            target = JobState.SCHEDULED
            failed = failed.with_schedule(
                datetime.now(timezone.utc) + config.retry_delay(failed.attempts)
            )

        self._rewrite(private, codec.encode(failed))
        os.rename(private, self._path(target, job_id))
        return target

    def _sync_promote(self) -> int:
        now = datetime.now(timezone.utc)
        promoted = 0
        for job_id in self._ids(JobState.SCHEDULED):
            src = self._path(JobState.SCHEDULED, job_id)
            try:
                job = self._load(src, job_id)
            except FileNotFoundError:
                continue
            except MalformedJobError as exc:
                logger.warning(
                    "Skipping malformed scheduled job", queue=self.name,
                    path=exc.path, error=str(exc.cause),
                )
                continue
            if not job.is_due(now):
                continue
            try:
                os.rename(src, self._path(JobState.READY, job_id))
            except FileNotFoundError:
                continue
            promoted += 1
        return promoted

    def _sync_heartbeat(self, job_id: str) -> None:
        try:
            os.utime(self._path(JobState.IN_PROGRESS, job_id))
        except FileNotFoundError as exc:
            raise JobNotFoundError(job_id, JobState.IN_PROGRESS.value) from exc

    def _sync_requeue_stale(self, timeout: timedelta) -> int:
        cutoff = time.time() - timeout.total_seconds()
        in_progress = self._dir(JobState.IN_PROGRESS)
        requeued = 0
        for name in sorted(os.listdir(in_progress)):
            job_id = codec.job_id_of(name) or _interrupted_fail_id(name)
            if job_id is None:
                continue
            src = in_progress / name
            try:
                if src.stat().st_mtime >= cutoff:
                    continue
                os.rename(src, self._path(JobState.READY, job_id))
            except FileNotFoundError:
                continue
            logger.warning("Requeued stale job", queue=self.name, job_id=job_id)
            requeued += 1
        return requeued


def _interrupted_fail_id(name: str) -> str | None:
    """Job id of a `.<id>.failing` file left behind by a crashed fail()."""
    if name.startswith(".") and name.endswith(_FAILING_SUFFIX):
        return name[1 : -len(_FAILING_SUFFIX)] or None
    return None
