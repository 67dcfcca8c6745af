"""Configuration for the job execution core."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Job core settings."""

    model_config = SettingsConfigDict(
        env_prefix="AMOEBA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service settings
    service_name: str = "amoeba-jobs"
    environment: str = "development"
    log_level: str = "INFO"
    log_format: Literal["json", "pretty", "simple"] = "pretty"

    # Workers
    worker_concurrency: int = Field(default=3, ge=1)
    poll_interval_seconds: float = Field(default=0.5, gt=0)

    # Retry / backoff
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    # Queue
    max_queue_size: int = Field(default=10000, ge=1)

    # Scheduler
    scheduler_tick_seconds: float = Field(default=60.0, gt=0)
    startup_lookahead_days: int = Field(default=2, ge=0)  # today + tomorrow
    live_priority: int = 10
    backfill_priority: int = 1

    # Rate limiting
    rate_limit_cleanup_seconds: float = Field(default=60.0, gt=0)
    redis_url: str = ""

    # Readiness thresholds
    queue_processing_watermark: int = 50
    queue_failure_rate_threshold: float = 30.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
