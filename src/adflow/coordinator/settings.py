"""
Environment-based runtime settings (``ADFLOW_*`` variables or a ``.env`` file).
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .policy import RetryPolicy
from .types import SQS_BATCH_LIMIT


class AdflowSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ADFLOW_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # queue
    queue_url: str = ""
    aws_region: str = "us-east-1"
    aws_endpoint_url: Optional[str] = None

    # batching / backpressure
    max_batch_size: int = Field(default=SQS_BATCH_LIMIT, ge=1)
    flush_interval_ms: int = Field(default=1000, gt=0)
    max_concurrent_batches: int = Field(default=5, ge=1, le=20)
    coalesce_writes: bool = True
    write_flush_interval_ms: int = Field(default=50, gt=0)

    # consumer
    worker_count: int = Field(default=3, ge=1)
    max_messages_per_batch: int = Field(default=SQS_BATCH_LIMIT, ge=1)
    polling_interval_ms: int = Field(default=1000, ge=0)
    processing_timeout_ms: int = Field(default=25_000, gt=0)
    visibility_timeout_seconds: int = Field(default=30, ge=0)
    wait_time_seconds: int = Field(default=20, ge=0, le=20)

    # retries
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_backoff_ms: int = Field(default=50, ge=0)
    retry_max_backoff_ms: int = Field(default=2000, ge=0)

    # stores
    raw_database_url: str = ""
    normalized_database_url: str = ""
    db_pool_max: int = Field(default=10, ge=1)

    # http / logging
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    log_level: str = "INFO"

    @field_validator("max_batch_size", "max_messages_per_batch")
    @classmethod
    def _clamp_to_batch_limit(cls, v: int) -> int:
        return min(v, SQS_BATCH_LIMIT)

    @property
    def flush_interval(self) -> float:
        return self.flush_interval_ms / 1000.0

    @property
    def write_flush_interval(self) -> float:
        return self.write_flush_interval_ms / 1000.0

    @property
    def polling_interval(self) -> float:
        return self.polling_interval_ms / 1000.0

    @property
    def processing_timeout(self) -> float:
        return self.processing_timeout_ms / 1000.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_backoff_ms=self.retry_initial_backoff_ms,
            max_backoff_ms=self.retry_max_backoff_ms,
        )


@lru_cache()
def get_settings() -> AdflowSettings:
    return AdflowSettings()
