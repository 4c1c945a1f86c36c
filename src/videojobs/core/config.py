"""Application configuration for the video job orchestrator.

Every tunable of the queue, poller, retry policy and worker pool is read
from ``VIDEOJOBS_*`` environment variables; components receive the values
through their constructors and never read the environment themselves.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_storage_root() -> Path:
    return Path("./var/videos")


class AppConfig(BaseSettings):
    """Pydantic settings container for the orchestration service."""

    model_config = SettingsConfigDict(env_prefix="VIDEOJOBS_", env_nested_delimiter="__")

    queue_dsn: str = Field(
        default="postgresql://localhost:5432/videojobs",
        description="Queue connection string (postgresql://, sqlite://, :memory: or memory://).",
    )
    queue_statement_timeout_ms: int = Field(
        default=5_000,
        ge=100,
        description="PostgreSQL statement_timeout used by the job queue (ms).",
    )
    database_url: str = Field(
        default="sqlite:///./var/videojobs.db",
        description="SQLAlchemy URL of the job repository.",
    )
    max_attempts: int = Field(default=3, ge=1, description="Execution attempts per job.")
    backoff_base_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Base delay of the exponential retry backoff in seconds.",
    )
    backoff_cap_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound on any retry delay in seconds.",
    )
    backoff_jitter_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Maximum random jitter added to each retry delay in seconds.",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Delay between two provider status polls.",
    )
    max_poll_attempts: int = Field(
        default=120,
        ge=1,
        description="Status polls per attempt before the attempt times out.",
    )
    poll_progress_cap: float = Field(
        default=0.9,
        gt=0.0,
        lt=1.0,
        description="Highest progress reported before the provider signals completion.",
    )
    worker_concurrency: int = Field(
        default=2,
        ge=1,
        description="Maximum simultaneously in-flight jobs per worker process.",
    )
    rate_limit_max_jobs: int = Field(
        default=10,
        ge=1,
        description="Maximum jobs started per rate-limit window.",
    )
    rate_limit_window_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Length of the rolling rate-limit window in seconds.",
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Time in-flight jobs get to finish after a stop signal.",
    )
    idle_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Sleep between queue polls while no job is claimable.",
    )
    heartbeat_window_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Workers with a heartbeat inside this window count as active.",
    )
    heartbeat_interval_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Interval between two worker heartbeat writes.",
    )
    claim_lease_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Lifetime of a job claim; renewed by every heartbeat of its worker.",
    )
    retain_completed_seconds: float = Field(default=3600.0, ge=0.0)
    retain_failed_seconds: float = Field(default=86400.0, ge=0.0)
    retain_completed_count: int = Field(default=100, ge=0)
    retain_failed_count: int = Field(default=500, ge=0)
    cleanup_interval_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="Interval of the periodic queue cleanup task.",
    )
    cleanup_grace_seconds: float = Field(
        default=86400.0,
        ge=0.0,
        description="Terminal jobs older than this are evicted by the cleanup task.",
    )
    cleanup_batch_limit: int = Field(default=100, ge=1)
    storage_root: Path = Field(
        default_factory=_default_storage_root,
        description="Filesystem root for uploaded videos.",
    )
    storage_public_base_url: str = Field(
        default="http://localhost:8000/media",
        description="Public URL prefix under which uploaded videos are served.",
    )
    provider_keys: Dict[str, str] = Field(
        default_factory=dict,
        description="Mapping of provider identifiers to configured API keys.",
    )
    google_project_id: str | None = Field(
        default=None,
        description="Google Cloud project used by the Veo adapter.",
    )
    google_location: str = Field(default="us-central1")
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout applied to provider API requests in seconds.",
    )
    download_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Timeout applied to rendered asset downloads in seconds.",
    )
    worker_id: str | None = Field(
        default=None,
        description="Stable worker identifier; generated from host and pid when unset.",
    )

    @model_validator(mode="after")
    def _check_backoff(self) -> "AppConfig":
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self

    @model_validator(mode="after")
    def _check_lease(self) -> "AppConfig":
        if self.claim_lease_seconds <= self.heartbeat_interval_seconds:
            raise ValueError("claim_lease_seconds must exceed heartbeat_interval_seconds")
        return self

    @classmethod
    def build_default(cls) -> "AppConfig":
        """Construct configuration from the environment."""

        return cls()


__all__ = ["AppConfig"]
