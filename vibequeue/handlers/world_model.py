"""
WorldModelHandler — the job handler of the world-model processor.

Routes jobs by queue name:

  loveops-events-ingest  → shape the payload into an event, append it to the
                           event sink
  loveops-metrics        → append a metrics record to a JSON file sink

Payload shapes accepted by the ingest route
-------------------------------------------
  {"type": "document_upload", "userId": ..., "file": {...}}
      becomes a profile_created event carrying the document
  {"event": {...}}
      the inner event is forwarded as-is
  {...}
      any other mapping is forwarded as-is

Event validation and normalization belong to the event sink, not here.

Metrics file sink
-----------------
Records with type "queue" are appended to <metrics_path>/queues.json, type
"service" to services.json; other types are accepted and dropped. Each file
holds a JSON array. The read-append-write runs under an exclusive
fcntl.flock on the file so concurrent pollers never lose an entry.
"""

from __future__ import annotations

import asyncio
import dataclasses
import fcntl
import json
import os
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from vibequeue.domain.models import QueueJob
from vibequeue.observability.logging import get_logger
from vibequeue.ports.handler import EventSink

logger = get_logger(__name__)

INGEST_QUEUE = "loveops-events-ingest"
METRICS_QUEUE = "loveops-metrics"

_METRICS_FILES = {"queue": "queues.json", "service": "services.json"}


@dataclasses.dataclass
class WorldModelHandler:
    """
    Job handler for the event-ingest and metrics queues.

    Parameters
    ----------
    event_sink    : where ingested events are appended
    metrics_path  : directory holding the metrics JSON files
    ingest_queue  : name of the event-ingest queue
    metrics_queue : name of the metrics queue
    """

    event_sink: EventSink
    metrics_path: Path
    ingest_queue: str = INGEST_QUEUE
    metrics_queue: str = METRICS_QUEUE

    def __post_init__(self) -> None:
        self.metrics_path = Path(self.metrics_path)

    async def __call__(self, queue_name: str, job: QueueJob) -> bool:
        if queue_name == self.ingest_queue:
            return await self.handle_event_ingest(job.payload)
        if queue_name == self.metrics_queue:
            return await self.handle_metrics(job.payload)
        logger.warning("Unknown queue", queue=queue_name, job_id=job.id)
        return False

    async def handle_event_ingest(self, payload: Any) -> bool:
        try:
            event = build_event(payload)
            await self.event_sink.append_event(event)
        except Exception:
            logger.exception("Error ingesting event", payload=payload)
            return False
        logger.info(
            "Ingested event", type=event.get("type"), actor_id=event.get("actorId")
        )
        return True

    async def handle_metrics(self, payload: Any) -> bool:
        try:
            if not isinstance(payload, Mapping):
                raise TypeError(
                    f"metrics payload must be an object, got {type(payload).__name__}"
                )
            target = _METRICS_FILES.get(payload.get("type"))
            if target is None:
                return True
            record = {**payload, "timestamp": _now_iso()}
            await asyncio.to_thread(
                _append_json_record, self.metrics_path / target, record
            )
        except Exception:
            logger.exception("Error writing metrics")
            return False
        return True


def build_event(payload: Any) -> dict[str, Any]:
    """Shape an ingest payload into an event dict (see module docstring)."""
    if not isinstance(payload, Mapping):
        raise TypeError(
            f"event payload must be an object, got {type(payload).__name__}"
        )

    if payload.get("type") == "document_upload":
        user_id = payload.get("userId")
        file = payload.get("file") or {}
        now = datetime.now(timezone.utc)
        return {
            "id": (
                f"doc-upload-{user_id}-{int(now.timestamp() * 1000)}"
                if user_id
                else None
            ),
            "timestamp": now.isoformat(),
            "source": "views:document_upload",
            "actorId": user_id,
            "domain": "profile",
            "type": "profile_created",
            "payload": {
                "document": {
                    "filename": file.get("filename"),
                    "mimetype": file.get("mimetype"),
                    "size": file.get("size"),
                    "data": file.get("data"),
                },
                "uploadType": "date_me_doc",
            },
            "confidence": 1.0,
        }

    inner = payload.get("event")
    if isinstance(inner, Mapping):
        return dict(inner)
    return dict(payload)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _append_json_record(path: Path, record: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)

        existing = os.read(fd, os.fstat(fd).st_size)
        records = json.loads(existing) if existing.strip() else []
        if not isinstance(records, list):
            raise ValueError(f"{path} does not hold a JSON array")
        records.append(record)

        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(records, indent=2).encode("utf-8"))
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
