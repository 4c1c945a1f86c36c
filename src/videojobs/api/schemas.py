"""Pydantic models of the job and admin HTTP contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..domain.models import FailedJobSample, JobOptions, JobSnapshot, QueueCounts, QueueHealth
from ..repositories.job_repository import JobRecord


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobOptionsModel(CamelModel):
    """Per-job overrides of the queue defaults."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    max_attempts: Optional[int] = Field(None, ge=1, le=20)
    backoff_seconds: Optional[float] = Field(None, ge=0.0)
    retain_completed_seconds: Optional[float] = Field(None, ge=0.0)
    retain_failed_seconds: Optional[float] = Field(None, ge=0.0)

    def merged_with(self, defaults: JobOptions) -> JobOptions:
        return JobOptions(
            max_attempts=self.max_attempts if self.max_attempts is not None else defaults.max_attempts,
            backoff_seconds=(
                self.backoff_seconds if self.backoff_seconds is not None else defaults.backoff_seconds
            ),
            retain_completed_seconds=(
                self.retain_completed_seconds
                if self.retain_completed_seconds is not None
                else defaults.retain_completed_seconds
            ),
            retain_failed_seconds=(
                self.retain_failed_seconds
                if self.retain_failed_seconds is not None
                else defaults.retain_failed_seconds
            ),
        )


class EnqueueJobRequest(CamelModel):
    """Request body of ``POST /api/jobs``."""

    id: str = Field(..., min_length=1, max_length=200, description="Idempotency key of the job.")
    provider: Literal["sora", "veo"]
    payload: Dict[str, Any] = Field(default_factory=dict)
    options: Optional[JobOptionsModel] = None


class JobStatusResponse(CamelModel):
    id: str
    provider: str
    status: str
    state: str
    progress: float
    attempts: int
    max_attempts: Optional[int] = None
    provider_job_id: Optional[str] = None
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot) -> "JobStatusResponse":
        return cls(
            id=snapshot.id,
            provider=snapshot.provider.value,
            status=snapshot.status.value,
            state=snapshot.state.value,
            progress=snapshot.progress,
            attempts=snapshot.attempts,
            max_attempts=snapshot.max_attempts,
            provider_job_id=snapshot.provider_job_id,
            result_url=snapshot.result_url,
            thumbnail_url=snapshot.thumbnail_url,
            error_message=snapshot.error_message,
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
            completed_at=snapshot.completed_at,
        )

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        """Build a response for a job already evicted from the queue."""

        state = {"pending": "waiting", "processing": "active"}.get(record.status, record.status)
        return cls(
            id=record.id,
            provider=record.provider,
            status=record.status,
            state=state,
            progress=record.progress,
            attempts=record.attempts,
            provider_job_id=record.provider_job_id,
            result_url=record.result_url,
            thumbnail_url=record.thumbnail_url,
            error_message=record.error_message,
            created_at=record.created_at,
            updated_at=record.updated_at,
            completed_at=record.completed_at,
        )


class CancelJobResponse(CamelModel):
    id: str
    status: Literal["cancelled"] = "cancelled"


class QueueStatsModel(CamelModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int

    @classmethod
    def from_counts(cls, counts: QueueCounts) -> "QueueStatsModel":
        return cls(
            waiting=counts.waiting,
            active=counts.active,
            completed=counts.completed,
            failed=counts.failed,
            delayed=counts.delayed,
            total=counts.total,
        )


class QueueHealthModel(CamelModel):
    status: Literal["healthy", "degraded", "critical"]
    issues: List[str]
    failure_rate: float

    @classmethod
    def from_health(cls, health: QueueHealth) -> "QueueHealthModel":
        return cls(
            status=health.status.value,
            issues=list(health.issues),
            failure_rate=round(health.failure_rate, 4),
        )


class FailedJobModel(CamelModel):
    id: str
    provider: str
    error_message: Optional[str] = None
    attempts: int
    failed_at: datetime

    @classmethod
    def from_sample(cls, sample: FailedJobSample) -> "FailedJobModel":
        return cls(
            id=sample.id,
            provider=sample.provider.value,
            error_message=sample.error_message,
            attempts=sample.attempts,
            failed_at=sample.failed_at,
        )


class QueueOverviewResponse(CamelModel):
    """Admin view of the queue: counts, health classification and recent failures."""

    stats: QueueStatsModel
    health: QueueHealthModel
    failed_jobs: List[FailedJobModel]
    timestamp: datetime


__all__ = [
    "CancelJobResponse",
    "EnqueueJobRequest",
    "FailedJobModel",
    "JobOptionsModel",
    "JobStatusResponse",
    "QueueHealthModel",
    "QueueOverviewResponse",
    "QueueStatsModel",
]
