"""Domain entities for the video job orchestrator."""

from .models import (
    CancelResult,
    EnqueueResult,
    FailedJobSample,
    HealthStatus,
    Job,
    JobEvent,
    JobEventType,
    JobOptions,
    JobSnapshot,
    JobStatus,
    ProviderId,
    QueueCounts,
    QueueHealth,
    QueueState,
)

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
]
