"""Service layer of the video job orchestrator."""

from .health import HealthService
from .job_queue import HealthThresholds, JobQueue, RetentionLimits
from .retry_policy import RetryDecision, RetryPolicy
from .status_poller import PollOutcome, PollState, StatusPoller

__all__ = [
    "HealthService",
    "HealthThresholds",
    "JobQueue",
    "PollOutcome",
    "PollState",
    "RetentionLimits",
    "RetryDecision",
    "RetryPolicy",
    "StatusPoller",
]
