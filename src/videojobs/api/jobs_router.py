"""HTTP routes for submitting and tracking video jobs."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status

from ..domain.models import CancelResult
from ..repositories.job_repository import JobRepository
from ..services.job_queue import JobQueue
from .errors import conflict_error, not_found_error, validation_error
from .schemas import CancelJobResponse, EnqueueJobRequest, JobStatusResponse


logger = logging.getLogger(__name__)


def build_jobs_router(queue: JobQueue, repository: JobRepository | None = None) -> APIRouter:
    router = APIRouter(prefix="/api/jobs", tags=["jobs"])

    @router.post(
        "",
        response_model=JobStatusResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_202_ACCEPTED,
    )
    def enqueue_job(body: EnqueueJobRequest, response: Response) -> JobStatusResponse:
        """Queue a job; repeating an id returns the existing job with 200."""

        try:
            options = body.options.merged_with(queue.default_options) if body.options else None
            result = queue.enqueue(body.id, body.provider, body.payload, options)
        except ValueError as exc:
            raise validation_error(str(exc)) from exc
        if not result.created:
            response.status_code = status.HTTP_200_OK
        return JobStatusResponse.from_snapshot(result.job)

    @router.get("/{job_id}", response_model=JobStatusResponse, response_model_exclude_none=True)
    def get_job(job_id: str) -> JobStatusResponse:
        snapshot = queue.get_status(job_id)
        if snapshot is not None:
            return JobStatusResponse.from_snapshot(snapshot)
        record = repository.get(job_id) if repository is not None else None
        if record is None:
            raise not_found_error(f"job {job_id} not found")
        return JobStatusResponse.from_record(record)

    @router.post("/{job_id}/cancel", response_model=CancelJobResponse)
    def cancel_job(job_id: str) -> CancelJobResponse:
        result = queue.cancel(job_id)
        if result is CancelResult.NOT_FOUND:
            raise not_found_error(f"job {job_id} not found")
        if result is CancelResult.IN_PROGRESS:
            raise conflict_error("job_in_progress", f"job {job_id} is already being processed")
        if result is CancelResult.FINISHED:
            raise conflict_error("job_finished", f"job {job_id} already finished")
        logger.info("api.job.cancelled", extra={"job_id": job_id})
        return CancelJobResponse(id=job_id)

    return router


__all__ = ["build_jobs_router"]
