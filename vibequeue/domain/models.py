"""
Domain models for vibequeue — backed by Pydantic v2.

Pydantic handles:
  - JSON serialization / deserialization (via codec.py)
  - camelCase wire names (createdAt, scheduledFor, batchSize, ...) via aliases
  - datetime parsing (ISO-8601 with timezone)
  - field validation and type coercion of queue configuration

All models are frozen (immutable). Mutations return new instances via
model_copy(update=...), following a functional-update style.
"""

import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def new_job_id() -> str:
    """
    Time-ordered job id: 13-digit epoch milliseconds plus a random suffix.

    The fixed-width prefix makes lexicographic order approximate creation
    order; the suffix makes collisions within one millisecond negligible.
    """
    return f"{time.time_ns() // 1_000_000:013d}-{uuid.uuid4().hex[:12]}"


def check_queue_name(name: str) -> str:
    """Queue names become directory names; reject anything that escapes one."""
    if name in (".", "..") or os.sep in name or (os.altsep and os.altsep in name):
        raise ValueError(f"queue name {name!r} is not a valid directory name")
    return name


def _as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class JobState(str, Enum):
    """Lifecycle states for a queued job. Values double as directory names."""

    READY = "ready"
    IN_PROGRESS = "in_progress"
    SCHEDULED = "scheduled"
    DONE = "done"
    DEAD = "dead"


class ProcessorRole(str, Enum):
    """Which logical processor consumes a queue."""

    WORLD_MODEL = "world-model"
    VIEWS = "views"
    BOTH = "both"

    def owns(self, tag: "ProcessorRole") -> bool:
        """True if a processor of this role consumes queues tagged `tag`."""
        return (
            tag is self or tag is ProcessorRole.BOTH or self is ProcessorRole.BOTH
        )


class QueueJob(BaseModel):
    """
    A single unit of work stored in the queue.

    id            — time-ordered identifier, assigned at enqueue time
    payload       — arbitrary JSON value, interpreted by the job handler
    attempts      — number of failed processing attempts so far
    created_at    — UTC timestamp of the original enqueue
    scheduled_for — UTC timestamp before which the job must not run;
                    only set while the job waits in `scheduled`
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=new_job_id, min_length=1)
    payload: Any = None
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    scheduled_for: datetime | None = Field(default=None, alias="scheduledFor")

    @field_validator("created_at", "scheduled_for")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        return None if v is None else _as_utc(v)

    @classmethod
    def new(cls, payload: Any, scheduled_for: datetime | None = None) -> "QueueJob":
        """Factory — assigns a fresh id and zero attempts."""
        return cls(payload=payload, scheduled_for=scheduled_for)

    def with_schedule(self, ts: datetime | None) -> "QueueJob":
        """Return a new QueueJob with an updated scheduled_for timestamp."""
        return self.model_copy(
            update={"scheduled_for": None if ts is None else _as_utc(ts)}
        )

    def with_attempt(self) -> "QueueJob":
        """Return a new QueueJob with the failed-attempt counter incremented."""
        return self.model_copy(update={"attempts": self.attempts + 1})

    def is_due(self, now: datetime) -> bool:
        """A job with no scheduled_for is always due."""
        return self.scheduled_for is None or self.scheduled_for <= _as_utc(now)


class QueueConfig(BaseModel):
    """
    Per-queue configuration.

    Accepts the camelCase keys of VQ_QUEUE_CONFIG as well as the older short
    keys (retries, retryDelay, timeout, processor).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    path: str | None = None
    processor: ProcessorRole = Field(
        default=ProcessorRole.WORLD_MODEL,
        validation_alias=AliasChoices("processorRole", "processor"),
        serialization_alias="processorRole",
    )
    workers: int = Field(default=1, ge=1)
    batch_size: int = Field(
        default=1,
        ge=1,
        validation_alias=AliasChoices("batchSize", "batch_size"),
        serialization_alias="batchSize",
    )
    timeout_ms: int | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeoutMs", "timeout", "timeout_ms"),
        serialization_alias="timeoutMs",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        validation_alias=AliasChoices("maxRetries", "retries", "max_retries"),
        serialization_alias="maxRetries",
    )
    retry_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        validation_alias=AliasChoices(
            "retryBaseDelayMs", "retryDelay", "retry_base_delay_ms"
        ),
        serialization_alias="retryBaseDelayMs",
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return check_queue_name(v)

    @property
    def retry_base_delay(self) -> timedelta:
        return timedelta(milliseconds=self.retry_base_delay_ms)

    @property
    def timeout(self) -> timedelta | None:
        if self.timeout_ms is None:
            return None
        return timedelta(milliseconds=self.timeout_ms)

    def retry_delay(self, attempts: int) -> timedelta:
        """Linear back-off: base delay scaled by the attempt count."""
        return self.retry_base_delay * attempts


class ParsedQueueConfig(BaseModel):
    """
    The complete queue configuration consumed at startup.

    base_path — root directory under which every queue lives
    queues    — ordered queue configurations; names are unique
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    base_path: str = Field(
        validation_alias=AliasChoices("basePath", "base_path"),
        serialization_alias="basePath",
    )
    queues: tuple[QueueConfig, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _default_paths(cls, data: Any) -> Any:
        """Fill in `<basePath>/<name>` for queues that omit their path."""
        if not isinstance(data, dict):
            return data
        base = data.get("basePath", data.get("base_path"))
        queues = data.get("queues")
        if base is None or not isinstance(queues, (list, tuple)):
            return data
        filled = []
        for q in queues:
            if isinstance(q, dict) and not q.get("path") and q.get("name"):
                q = {**q, "path": os.path.join(str(base), str(q["name"]))}
            filled.append(q)
        return {**data, "queues": filled}

    @model_validator(mode="after")
    def _unique_names(self) -> "ParsedQueueConfig":
        seen: set[str] = set()
        for q in self.queues:
            if q.name in seen:
                raise ValueError(f"duplicate queue name {q.name!r}")
            seen.add(q.name)
        return self

    def queue(self, name: str) -> QueueConfig | None:
        """Return the queue configuration with the given name, or None."""
        return next((q for q in self.queues if q.name == name), None)

    def for_role(self, role: ProcessorRole) -> tuple[QueueConfig, ...]:
        """All queues consumed by a processor of the given role."""
        return tuple(q for q in self.queues if role.owns(q.processor))
