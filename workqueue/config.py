"""
Centralized Configuration System
Environment-aware settings for the queue store, workers and sweeps.
"""
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"
    )
    """
    Production-grade configuration management.
    Loads from environment variables with sensible defaults.

    Built once at process start and handed to every component constructor.
    """

    # ============================================
    # MONGODB
    # ============================================
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "workqueue"
    mongodb_max_pool_size: int = 20
    mongodb_min_pool_size: int = 1
    mongodb_server_selection_timeout_ms: int = 5000

    # One collection per queue variant
    event_queue_collection: str = "webhook_queue"
    job_queue_collection: str = "job_queue"

    # ============================================
    # RETRY BACKOFF (delay multiplier for dispatch retries)
    # ============================================
    retry_factor: float = Field(default=2.0, ge=1)

    # ============================================
    # DISPATCHER
    # ============================================
    processor_url: Optional[str] = None  # None = in-process processor
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0)
    dispatch_retry_max_attempts: int = Field(default=3, ge=1)
    dispatch_retry_initial_delay_seconds: float = Field(default=0.5, ge=0)

    # ============================================
    # JOB WORKER
    # ============================================
    job_batch_size: int = Field(default=5, ge=1)
    job_max_attempts: int = Field(default=3, ge=1)
    job_timeout_seconds: float = Field(default=60.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)  # CLI --loop cadence

    # ============================================
    # INBOUND EVENT DISPATCH
    # ============================================
    event_batch_size: int = Field(default=10, ge=1)
    event_max_attempts: int = Field(default=5, ge=1)

    # ============================================
    # RECOVERY SWEEPER
    # ============================================
    recovery_stale_after_minutes: float = Field(default=5, gt=0)
    recovery_batch_size: int = Field(default=50, ge=1)
    recovery_max_retries: int = Field(default=3, ge=0)

    # ============================================
    # LOGGING
    # ============================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_structured_logging: bool = False  # Set to True for production JSON logs

    # ============================================
    # ENVIRONMENT
    # ============================================
    environment: Literal["development", "test", "staging", "production"] = "development"

    @field_validator("processor_url")
    @classmethod
    def blank_url_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


@lru_cache()
def get_settings() -> Settings:
    """
    Singleton pattern for settings.
    Uses LRU cache to ensure only one Settings instance exists.
    """
    return Settings()
