"""Domain models for video generation jobs.

A :class:`Job` is created when a caller enqueues it, mutated by the worker
that currently owns it and evicted from the queue once its retention window
elapses. Its terminal record survives in the job repository. Status values
follow ``pending -> processing -> {completed, failed}`` with two sanctioned
ways back to ``pending``: a retry scheduled by the retry policy and an
explicit :meth:`~src.videojobs.services.job_queue.JobQueue.retry` call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping


class JobStatus(str, Enum):
    """Persistent job states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueState(str, Enum):
    """Queue-side view of a job used by monitoring.

    ``waiting`` and ``delayed`` both map to :attr:`JobStatus.PENDING`; a
    delayed job carries an ``available_at`` in the future because a retry
    backoff is still running.
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderId(str, Enum):
    """Closed set of supported rendering services."""

    SORA = "sora"
    VEO = "veo"


class JobEventType(str, Enum):
    """Events emitted by the queue after each committed mutation."""

    CREATED = "created"
    STARTED = "started"
    SUBMITTED = "submitted"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"
    RETRIED = "retried"
    REMOVED = "removed"


class CancelResult(str, Enum):
    """Outcome of :meth:`JobQueue.cancel`."""

    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


@dataclass(slots=True)
class JobOptions:
    """Per-job execution and retention settings supplied at enqueue time."""

    max_attempts: int = 3
    backoff_seconds: float = 2.0
    retain_completed_seconds: float = 3600.0
    retain_failed_seconds: float = 86400.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")
        if self.retain_completed_seconds < 0 or self.retain_failed_seconds < 0:
            raise ValueError("retention windows must not be negative")


@dataclass(frozen=True, slots=True)
class StartRateLimit:
    """At most ``max_jobs`` claims across all workers inside any ``window_seconds`` window."""

    max_jobs: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    def window_start(self, now: datetime) -> datetime:
        """Claims recorded at or before this instant no longer count."""

        return now - self.window


@dataclass(slots=True)
class Job:
    """Unit of work representing one requested video generation.

    ``lease_expires_at`` bounds how long a claim survives without a sign of
    life from its worker. ``recorded`` is false while a terminal state still
    waits for the job repository to accept it; such rows are never evicted.
    """

    id: str
    provider: ProviderId
    payload: dict[str, Any]
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    available_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    retain_completed_seconds: float = 3600.0
    retain_failed_seconds: float = 86400.0
    progress: float = 0.0
    provider_job_id: str | None = None
    result_url: str | None = None
    thumbnail_url: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    claimed_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    evict_after: datetime | None = None
    lease_expires_at: datetime | None = None
    recorded: bool = True

    @classmethod
    def create(
        cls,
        *,
        job_id: str,
        provider: ProviderId,
        payload: Mapping[str, Any],
        options: JobOptions,
        now: datetime,
    ) -> "Job":
        return cls(
            id=job_id,
            provider=provider,
            payload=dict(payload),
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            available_at=now,
            max_attempts=options.max_attempts,
            backoff_seconds=options.backoff_seconds,
            retain_completed_seconds=options.retain_completed_seconds,
            retain_failed_seconds=options.retain_failed_seconds,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.status is JobStatus.PROCESSING
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def retention_deadline(self, finished_at: datetime) -> datetime:
        """Return the instant after which a terminal job may be evicted."""

        window = (
            self.retain_completed_seconds
            if self.status is JobStatus.COMPLETED
            else self.retain_failed_seconds
        )
        return finished_at + timedelta(seconds=window)

    def queue_state(self, now: datetime) -> QueueState:
        if self.status is JobStatus.PENDING:
            return QueueState.DELAYED if self.available_at > now else QueueState.WAITING
        if self.status is JobStatus.PROCESSING:
            return QueueState.ACTIVE
        if self.status is JobStatus.COMPLETED:
            return QueueState.COMPLETED
        return QueueState.FAILED


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """Read-only status view returned to callers."""

    id: str
    provider: ProviderId
    status: JobStatus
    state: QueueState
    progress: float
    attempts: int
    max_attempts: int
    provider_job_id: str | None
    result_url: str | None
    thumbnail_url: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_job(cls, job: Job, *, now: datetime) -> "JobSnapshot":
        return cls(
            id=job.id,
            provider=job.provider,
            status=job.status,
            state=job.queue_state(now),
            progress=job.progress,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            provider_job_id=job.provider_job_id,
            result_url=job.result_url,
            thumbnail_url=job.thumbnail_url,
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    """Result of an enqueue call; ``created`` is false for duplicates."""

    job: JobSnapshot
    created: bool


@dataclass(frozen=True, slots=True)
class JobEvent:
    """Notification delivered to queue subscribers."""

    type: JobEventType
    job_id: str
    job: Job | None
    occurred_at: datetime
    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class QueueCounts:
    """Aggregate counts by queue state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


@dataclass(frozen=True, slots=True)
class FailedJobSample:
    """Recent failure entry exposed by the admin contract."""

    id: str
    provider: ProviderId
    error_message: str | None
    attempts: int
    failed_at: datetime


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class QueueHealth:
    """Queue health classification derived from :class:`QueueCounts`."""

    status: HealthStatus
    issues: tuple[str, ...]
    failure_rate: float


__all__ = [
    "CancelResult",
    "EnqueueResult",
    "FailedJobSample",
    "HealthStatus",
    "Job",
    "JobEvent",
    "JobEventType",
    "JobOptions",
    "JobSnapshot",
    "JobStatus",
    "ProviderId",
    "QueueCounts",
    "QueueHealth",
    "QueueState",
    "StartRateLimit",
]
