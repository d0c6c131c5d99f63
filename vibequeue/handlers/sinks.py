"""Event sinks the ingest handler can forward events to."""

from __future__ import annotations

import dataclasses
from typing import Any

from vibequeue.observability.logging import get_logger

logger = get_logger(__name__)


@dataclasses.dataclass
class LoggingEventSink:
    """
    Placeholder for the external append-only event log.

    Logs each event and keeps nothing. Deployments with a real event log pass
    their own EventSink to WorldModelHandler instead.
    """

    async def append_event(self, event: dict[str, Any]) -> None:
        logger.info("Event appended", type=event.get("type"), event_id=event.get("id"))
