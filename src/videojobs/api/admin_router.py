"""Administrative queue inspection and manual retry."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from ..clock import Clock, SystemClock
from ..errors import InvalidJobStateError, JobNotFoundError, RetriesExhaustedError
from ..services.job_queue import JobQueue
from .errors import conflict_error, not_found_error
from .schemas import (
    FailedJobModel,
    JobStatusResponse,
    QueueHealthModel,
    QueueOverviewResponse,
    QueueStatsModel,
)


logger = logging.getLogger(__name__)

FAILED_SAMPLE_SIZE = 5


def build_admin_router(queue: JobQueue, clock: Clock | None = None) -> APIRouter:
    router = APIRouter(prefix="/api/admin/queue", tags=["admin"])
    tick = clock or SystemClock()

    @router.get("", response_model=QueueOverviewResponse)
    def queue_overview() -> QueueOverviewResponse:
        """Return queue counts, health classification and recent failures."""

        counts = queue.counts()
        return QueueOverviewResponse(
            stats=QueueStatsModel.from_counts(counts),
            health=QueueHealthModel.from_health(queue.queue_health(counts)),
            failed_jobs=[
                FailedJobModel.from_sample(sample)
                for sample in queue.recent_failures(limit=FAILED_SAMPLE_SIZE)
            ],
            timestamp=tick.now(),
        )

    @router.post(
        "/retry/{job_id}",
        response_model=JobStatusResponse,
        response_model_exclude_none=True,
    )
    def retry_job(job_id: str) -> JobStatusResponse:
        try:
            snapshot = queue.retry(job_id)
        except JobNotFoundError as exc:
            raise not_found_error(str(exc)) from exc
        except RetriesExhaustedError as exc:
            raise conflict_error("retries_exhausted", str(exc)) from exc
        except InvalidJobStateError as exc:
            raise conflict_error("invalid_state", str(exc)) from exc
        logger.info("api.job.retried", extra={"job_id": job_id})
        return JobStatusResponse.from_snapshot(snapshot)

    return router


__all__ = ["build_admin_router"]
