"""Scheduler configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Scheduler settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Scheduling
    default_timezone: str = Field(default="UTC")
    misfire_grace_seconds: int = Field(default=60)
    shutdown_grace_seconds: float = Field(default=10.0)

    # Execution window
    sync_timeout_seconds: float = Field(default=1800.0)
    sync_timeout_overrides: dict[str, float] = Field(default_factory=dict)

    # Retry policy
    retry_max_attempts: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=60.0)
    retry_backoff_multiplier: float = Field(default=2.0)

    # Cleanup sweeper
    stuck_run_threshold_seconds: float = Field(default=7200.0)
    sweep_interval_seconds: int = Field(default=3600)

    # Notifications
    notifications_backend: Literal["log", "redis"] = Field(default="log")
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0")
    sync_events_channel: str = Field(default="sync_events")
    event_queue_size: int = Field(default=1000)

    # Source store
    database_url: str | None = Field(default=None)
    data_sources_table: str = Field(default="data_sources")

    # Adapters, as "package.module:ClassName"
    adapter_classes: list[str] = Field(default_factory=list)

    # Observability
    metrics_enabled: bool = Field(default=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
