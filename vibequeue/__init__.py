"""
vibequeue — durable directory-based job queues with a worker-pool processor.

A queue is a directory tree. Every job is one JSON file and its lifecycle
state is the sub-directory it sits in:

  <basePath>/<queue>/ready/        claimable
  <basePath>/<queue>/in_progress/  claimed by a poller
  <basePath>/<queue>/scheduled/    waiting for a retry or a delayed start
  <basePath>/<queue>/done/         completed
  <basePath>/<queue>/dead/         retries exhausted

Claiming a job is a single os.rename from ready/ to in_progress/; the
rename is the only mutual-exclusion primitive, so any number of pollers
(in one process or many) can share a queue.

Quick start
-----------
    import asyncio
    from vibequeue import DirectoryQueueStore, ParsedQueueConfig, WorkerPoolProcessor

    async def handle(queue_name, job):
        print(queue_name, job.payload)
        return True

    async def main():
        config = ParsedQueueConfig.model_validate(
            {"basePath": "/tmp/queues", "queues": [{"name": "emails", "workers": 2}]}
        )
        await DirectoryQueueStore("/tmp/queues", "emails").enqueue({"to": "a@b.c"})

        async with WorkerPoolProcessor(config, handle):
            await asyncio.sleep(3)

    asyncio.run(main())

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/        — pure value types (QueueJob, JobState, QueueConfig)
  ports/         — Protocol interfaces (QueueStorePort, JobHandler, EventSink)
  core/          — business logic (WorkerPoolProcessor, HeartbeatManager, codec)
  adapters/      — concrete queue stores (directory tree, in-memory)
  handlers/      — the world-model job handler and its event sink
"""
from __future__ import annotations

from vibequeue.adapters.store.filesystem import DirectoryQueueStore
from vibequeue.adapters.store.memory import InMemoryQueueStore
from vibequeue.config import Settings, get_settings, parse_queue_config
from vibequeue.core.heartbeat import HeartbeatManager
from vibequeue.core.processor import WorkerPoolProcessor
from vibequeue.domain.errors import (
    ConfigurationError,
    JobNotFoundError,
    MalformedJobError,
    StorageError,
    VibeQueueError,
)
from vibequeue.domain.models import (
    JobState,
    ParsedQueueConfig,
    ProcessorRole,
    QueueConfig,
    QueueJob,
)
from vibequeue.handlers.sinks import LoggingEventSink
from vibequeue.handlers.world_model import WorldModelHandler
from vibequeue.ports.handler import EventSink, JobHandler
from vibequeue.ports.store import QueueStorePort

__all__ = [
    # Domain models
    "QueueJob",
    "JobState",
    "ProcessorRole",
    "QueueConfig",
    "ParsedQueueConfig",
    # Errors
    "VibeQueueError",
    "JobNotFoundError",
    "MalformedJobError",
    "StorageError",
    "ConfigurationError",
    # Ports (for typing custom adapters and handlers)
    "QueueStorePort",
    "JobHandler",
    "EventSink",
    # Processing
    "WorkerPoolProcessor",
    "HeartbeatManager",
    # Built-in queue stores
    "DirectoryQueueStore",
    "InMemoryQueueStore",
    # Handlers
    "WorldModelHandler",
    "LoggingEventSink",
    # Configuration
    "Settings",
    "get_settings",
    "parse_queue_config",
]
