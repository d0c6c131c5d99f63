"""
Application configuration using Pydantic Settings.

Loads settings from environment variables (and a .env file) and turns
VQ_QUEUE_CONFIG into a ParsedQueueConfig. Configuration errors are fatal:
parse_queue_config() raises ConfigurationError instead of falling back.
"""

from __future__ import annotations

import json
from datetime import timedelta
from functools import lru_cache
from typing import Any, Literal

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from vibequeue.domain.errors import ConfigurationError
from vibequeue.domain.models import ParsedQueueConfig, ProcessorRole


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Queues
    vq_queue_config: str | None = None
    vq_base_path: str = "/var/queues"
    vq_processor_role: ProcessorRole = ProcessorRole.WORLD_MODEL

    # Processor cadence
    vq_poll_interval_seconds: float = 1.0
    vq_schedule_interval_seconds: float = 5.0
    vq_stale_timeout_seconds: float | None = None
    vq_enforce_timeout: bool = False

    # Handlers
    metrics_path: str = "./metrics/last_deploy"

    # Observability
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self.vq_poll_interval_seconds)

    @property
    def schedule_interval(self) -> timedelta:
        return timedelta(seconds=self.vq_schedule_interval_seconds)

    @property
    def stale_timeout(self) -> timedelta | None:
        if self.vq_stale_timeout_seconds is None:
            return None
        return timedelta(seconds=self.vq_stale_timeout_seconds)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def default_queue_config(base_path: str) -> ParsedQueueConfig:
    """The world-model deployment used when VQ_QUEUE_CONFIG is unset."""
    return ParsedQueueConfig.model_validate(
        {
            "basePath": base_path,
            "queues": [
                {
                    "name": "loveops-events-ingest",
                    "processorRole": "world-model",
                    "workers": 2,
                    "batchSize": 10,
                    "timeoutMs": 30000,
                    "maxRetries": 3,
                    "retryBaseDelayMs": 1000,
                },
                {
                    "name": "loveops-metrics",
                    "processorRole": "both",
                    "workers": 1,
                    "batchSize": 50,
                    "timeoutMs": 10000,
                    "maxRetries": 1,
                    "retryBaseDelayMs": 500,
                },
            ],
        }
    )


def parse_queue_config(settings: Settings | None = None) -> ParsedQueueConfig:
    """
    Build the queue configuration from settings.

    VQ_QUEUE_CONFIG is a JSON object {"basePath": ..., "queues": [...]};
    basePath falls back to VQ_BASE_PATH.

    Raises
    ------
    ConfigurationError  if VQ_QUEUE_CONFIG is not valid JSON or fails validation
    """
    settings = settings or get_settings()
    if not settings.vq_queue_config:
        return default_queue_config(settings.vq_base_path)

    try:
        raw: Any = json.loads(settings.vq_queue_config)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid VQ_QUEUE_CONFIG format: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError("Invalid VQ_QUEUE_CONFIG format: expected an object")

    data = {
        "basePath": raw.get("basePath") or settings.vq_base_path,
        "queues": raw.get("queues") or [],
    }
    try:
        return ParsedQueueConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid VQ_QUEUE_CONFIG: {exc}") from exc
