"""
Handler-side ports: the seam where domain-specific consumers plug in.

JobHandler  — called by the worker-pool processor for every claimed job
EventSink   — the append-only event log a handler forwards events to
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from vibequeue.domain.models import QueueJob


@runtime_checkable
class JobHandler(Protocol):
    """
    Performs the side effect for one job and reports the outcome.

    Must be safe to call concurrently for different jobs and must not keep
    mutable state across calls. A falsy return or a raised exception both
    count as a failed attempt.
    """

    async def __call__(self, queue_name: str, job: QueueJob) -> bool: ...


@runtime_checkable
class EventSink(Protocol):
    """External append-only event log."""

    async def append_event(self, event: dict[str, Any]) -> None: ...
