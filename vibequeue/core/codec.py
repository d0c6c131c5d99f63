"""
Codec — serialize and deserialize QueueJob to/from bytes using Pydantic v2.

One job per file. Pydantic handles the wire format:
  - snake_case attributes are written under their camelCase aliases
  - datetime fields are serialized as ISO-8601 strings with UTC offset
  - scheduledFor is omitted entirely while the job is not scheduled

Wire format (one file per job, <state>/<id>.json):
--------------------------------------------------
{
  "id": "1718000000000-3f2a9c0b1d4e",
  "payload": {"event": {"type": "message_sent"}},
  "attempts": 1,
  "createdAt": "2024-06-10T06:13:20Z",
  "scheduledFor": "2024-06-10T06:13:21Z"
}
"""
from __future__ import annotations

from pydantic import ValidationError

from vibequeue.domain.errors import MalformedJobError
from vibequeue.domain.models import QueueJob

SUFFIX = ".json"


def encode(job: QueueJob) -> bytes:
    """Serialize a QueueJob to UTF-8 JSON bytes."""
    exclude = {"scheduled_for"} if job.scheduled_for is None else None
    return job.model_dump_json(by_alias=True, exclude=exclude, indent=2).encode(
        "utf-8"
    )


def decode(data: bytes, source: str = "<bytes>", expected_id: str | None = None) -> QueueJob:
    """
    Deserialize UTF-8 JSON bytes to a QueueJob.

    Raises MalformedJobError for empty, unparseable or invalid content, and
    when the embedded id does not match `expected_id` (the filename stem).
    """
    if not data:
        raise MalformedJobError(source, ValueError("empty record"))
    try:
        job = QueueJob.model_validate_json(data)
    except ValidationError as exc:
        raise MalformedJobError(source, exc) from exc
    if expected_id is not None and job.id != expected_id:
        raise MalformedJobError(
            source, ValueError(f"embedded id {job.id!r} != filename id {expected_id!r}")
        )
    return job


def filename(job_id: str) -> str:
    return f"{job_id}{SUFFIX}"


def job_id_of(name: str) -> str | None:
    """Return the job id for a record filename, or None for anything else."""
    if name.startswith(".") or not name.endswith(SUFFIX):
        return None
    return name[: -len(SUFFIX)]
