"""
vibequeue command line.

Usage:
    vibequeue run
    vibequeue enqueue loveops-metrics '{"type": "queue", "depth": 3}'
    vibequeue enqueue loveops-events-ingest '{"event": {...}}' --delay 30
    vibequeue stats
    vibequeue promote loveops-events-ingest
    vibequeue requeue-stale loveops-events-ingest --older-than 300

Settings come from the environment (see vibequeue.config.Settings).
"""

from __future__ import annotations

import asyncio
import json
import signal
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from vibequeue.adapters.store.filesystem import DirectoryQueueStore
from vibequeue.config import Settings, get_settings, parse_queue_config
from vibequeue.core.processor import WorkerPoolProcessor
from vibequeue.domain.errors import ConfigurationError
from vibequeue.domain.models import JobState, ParsedQueueConfig
from vibequeue.handlers.sinks import LoggingEventSink
from vibequeue.handlers.world_model import WorldModelHandler
from vibequeue.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

app = typer.Typer(
    help="Directory-backed job queues and their worker pool",
    add_completion=False,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(settings: Settings) -> ParsedQueueConfig:
    try:
        return parse_queue_config(settings)
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _open_store(queue: str, base_path: Path | None) -> DirectoryQueueStore:
    if base_path is None:
        base_path = Path(_load_config(get_settings()).base_path)
    try:
        return DirectoryQueueStore(base_path, queue)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="QUEUE") from exc


async def _serve(settings: Settings, config: ParsedQueueConfig) -> None:
    handler = WorldModelHandler(
        event_sink=LoggingEventSink(), metrics_path=Path(settings.metrics_path)
    )
    processor = WorkerPoolProcessor(
        config,
        handler,
        role=settings.vq_processor_role,
        poll_interval=settings.poll_interval,
        schedule_interval=settings.schedule_interval,
        stale_timeout=settings.stale_timeout,
        enforce_timeout=settings.vq_enforce_timeout,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with processor:
        logger.info(
            "Queue processor running",
            base_path=config.base_path,
            queues=list(processor.queue_names),
        )
        await stop.wait()
        logger.info("Shutdown signal received")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.callback()
def main() -> None:
    """Configure logging for every command."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)


@app.command()
def run() -> None:
    """Run the worker pool until SIGINT or SIGTERM."""
    settings = get_settings()
    config = _load_config(settings)
    asyncio.run(_serve(settings, config))


@app.command()
def enqueue(
    queue: str = typer.Argument(..., help="Queue name"),
    payload: str = typer.Argument(..., help="Job payload as JSON"),
    delay: float = typer.Option(
        0.0, "--delay", "-d", min=0.0, help="Seconds before the job becomes claimable"
    ),
    base_path: Path | None = typer.Option(
        None, "--base-path", help="Queue root (defaults to the configured basePath)"
    ),
) -> None:
    """Add a job to a queue and print its id."""
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"payload is not valid JSON: {exc}") from exc

    scheduled_for = (
        datetime.now(timezone.utc) + timedelta(seconds=delay) if delay > 0 else None
    )
    store = _open_store(queue, base_path)
    typer.echo(asyncio.run(store.enqueue(data, scheduled_for)))


@app.command()
def stats(
    base_path: Path | None = typer.Option(
        None, "--base-path", help="Queue root (defaults to the configured basePath)"
    ),
) -> None:
    """Show how many jobs each configured queue holds per state."""
    config = _load_config(get_settings())
    root = base_path or Path(config.base_path)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Queue", style="cyan")
    for state in JobState:
        table.add_column(state.value, justify="right")

    for queue in config.queues:
        counts = asyncio.run(DirectoryQueueStore(root, queue.name).counts())
        table.add_row(queue.name, *(str(counts[state]) for state in JobState))

    Console().print(table)


@app.command()
def promote(
    queue: str = typer.Argument(..., help="Queue name"),
    base_path: Path | None = typer.Option(None, "--base-path"),
) -> None:
    """Move due scheduled jobs into ready."""
    promoted = asyncio.run(_open_store(queue, base_path).promote_scheduled())
    typer.echo(f"Promoted {promoted} job(s)")


@app.command("requeue-stale")
def requeue_stale(
    queue: str = typer.Argument(..., help="Queue name"),
    older_than: float = typer.Option(
        ..., "--older-than", min=0.0, help="Lease age in seconds"
    ),
    base_path: Path | None = typer.Option(None, "--base-path"),
) -> None:
    """Return in_progress jobs abandoned by a crashed or stopped worker to ready."""
    store = _open_store(queue, base_path)
    requeued = asyncio.run(store.requeue_stale(timedelta(seconds=older_than)))
    typer.echo(f"Requeued {requeued} job(s)")


if __name__ == "__main__":
    app()
