"""Idempotent job queue with retry scheduling, retention and events."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable, Iterable, Mapping

from ..clock import Clock, SystemClock
from ..domain.models import (
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
    StartRateLimit,
)
from ..errors import (
    InvalidJobStateError,
    JobNotFoundError,
    ProviderUnavailable,
    RetriesExhaustedError,
    VideoJobError,
)
from ..infrastructure.queue.base import QueueBackend
from .retry_policy import RetryDecision, RetryPolicy


logger = logging.getLogger(__name__)

JobListener = Callable[[JobEvent], Any]

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True, slots=True)
class RetentionLimits:
    """Upper bounds on terminal jobs kept in the queue."""

    keep_completed: int = 100
    keep_failed: int = 500


@dataclass(frozen=True, slots=True)
class HealthThresholds:
    """Thresholds used by :meth:`JobQueue.queue_health`."""

    critical_failure_rate: float = 0.5
    elevated_failure_rate: float = 0.2
    max_active: int = 10
    max_waiting: int = 100


class JobQueue:
    """Durable, idempotent-by-id job store used by the API and the workers.

    All storage calls are synchronous and atomic inside the backend; async
    callers go through :meth:`dequeue_next` or wrap the other methods in
    :func:`asyncio.to_thread`. Every committed mutation is published to
    subscribers as a :class:`JobEvent`.

    A claim holds a lease of ``claim_lease_seconds`` that the owning worker
    renews through :meth:`heartbeat`; :meth:`recover_stalled` fails claims
    whose lease ran out. ``rate_limit`` caps job starts across every worker
    sharing the backend.
    """

    def __init__(
        self,
        backend: QueueBackend,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        default_options: JobOptions | None = None,
        retention: RetentionLimits | None = None,
        health_thresholds: HealthThresholds | None = None,
        claim_lease_seconds: float = 300.0,
        rate_limit: StartRateLimit | None = None,
    ) -> None:
        if claim_lease_seconds <= 0:
            raise ValueError("claim_lease_seconds must be positive")
        self._backend = backend
        self._policy = retry_policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._default_options = default_options or JobOptions()
        self._retention = retention or RetentionLimits()
        self._thresholds = health_thresholds or HealthThresholds()
        self._lease = timedelta(seconds=claim_lease_seconds)
        self._rate_limit = rate_limit
        self._listeners: list[tuple[JobListener, bool]] = []
        self._listeners_lock = threading.Lock()

    @property
    def default_options(self) -> JobOptions:
        return self._default_options

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def rate_limit(self) -> StartRateLimit | None:
        return self._rate_limit

    # Subscriptions ------------------------------------------------------

    def subscribe(self, listener: JobListener, *, durable: bool = False) -> Callable[[], None]:
        """Register ``listener`` for job events and return an unsubscribe callback.

        A terminal job stays in the queue until every ``durable`` listener has
        accepted its final event; failed deliveries are retried by
        :meth:`resync_unrecorded`.
        """

        entry = (listener, durable)
        with self._listeners_lock:
            self._listeners.append(entry)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return _unsubscribe

    # Caller-facing operations -------------------------------------------

    def enqueue(
        self,
        job_id: str,
        provider: ProviderId | str,
        payload: Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> EnqueueResult:
        """Insert a job keyed by ``job_id``; duplicates return the existing job."""

        if not job_id or not job_id.strip():
            raise ValueError("job id must be a non-empty string")
        now = self._clock.now()
        job = Job.create(
            job_id=job_id,
            provider=ProviderId(provider),
            payload=payload,
            options=options or self._default_options,
            now=now,
        )
        stored, created = self._backend.insert(job)
        if created:
            logger.info(
                "queue.job.created",
                extra={"job_id": job_id, "provider": stored.provider.value},
            )
            self._emit(JobEventType.CREATED, stored)
        else:
            logger.info("queue.job.duplicate", extra={"job_id": job_id})
        return EnqueueResult(job=JobSnapshot.from_job(stored, now=now), created=created)

    def get_status(self, job_id: str) -> JobSnapshot | None:
        job = self._backend.get(job_id)
        if job is None:
            return None
        return JobSnapshot.from_job(job, now=self._clock.now())

    def get_job(self, job_id: str) -> Job:
        job = self._backend.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return job

    def cancel(self, job_id: str) -> CancelResult:
        """Remove a job that no worker has claimed yet.

        Cancellation is best effort: a job already claimed by a worker keeps
        running its current attempt.
        """

        job = self._backend.get(job_id)
        if job is None:
            return CancelResult.NOT_FOUND
        if job.status is JobStatus.PROCESSING:
            return CancelResult.IN_PROGRESS
        if job.is_terminal:
            return CancelResult.FINISHED
        if not self._backend.delete_pending(job_id):
            current = self._backend.get(job_id)
            if current is None:
                return CancelResult.NOT_FOUND
            if current.status is JobStatus.PROCESSING:
                return CancelResult.IN_PROGRESS
            return CancelResult.FINISHED
        logger.info("queue.job.cancelled", extra={"job_id": job_id})
        self._emit(JobEventType.CANCELLED, job, job_id=job_id)
        return CancelResult.CANCELLED

    def retry(self, job_id: str) -> JobSnapshot:
        """Reset a failed job for one more attempt."""

        job = self._backend.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        if job.status is not JobStatus.FAILED:
            raise InvalidJobStateError(
                f"job {job_id} is {job.status.value}; only failed jobs can be retried"
            )
        if job.attempts_exhausted:
            raise RetriesExhaustedError(
                f"job {job_id} already used {job.attempts} of {job.max_attempts} attempts"
            )
        now = self._clock.now()
        updated = replace(
            job,
            status=JobStatus.PENDING,
            available_at=now,
            updated_at=now,
            completed_at=None,
            evict_after=None,
            error_message=None,
            error_kind=None,
            provider_job_id=None,
            progress=0.0,
            claimed_by=None,
            lease_expires_at=None,
            recorded=True,
        )
        self._save(job, updated)
        logger.info("queue.job.retried", extra={"job_id": job_id, "attempts": job.attempts})
        self._emit(JobEventType.RETRIED, updated)
        return JobSnapshot.from_job(updated, now=now)

    def clean(
        self,
        older_than: timedelta,
        statuses: Iterable[JobStatus] = TERMINAL_STATUSES,
        *,
        limit: int = 100,
    ) -> list[str]:
        """Evict terminal jobs finished more than ``older_than`` ago."""

        wanted = tuple(statuses)
        if any(not status.is_terminal for status in wanted):
            raise ValueError("only terminal jobs can be cleaned")
        cutoff = self._clock.now() - older_than
        removed = self._backend.evict(statuses=wanted, finished_before=cutoff, limit=limit)
        self._emit_removed(removed, reason="clean")
        if removed:
            logger.info("queue.jobs.cleaned", extra={"count": len(removed)})
        return removed

    # Worker-facing operations -------------------------------------------

    def claim_next(self, worker_id: str) -> Job | None:
        """Claim the oldest available job, or ``None`` when nothing may start now."""

        now = self._clock.now()
        job = self._backend.claim_next(
            now=now,
            worker_id=worker_id,
            lease_until=now + self._lease,
            rate_limit=self._rate_limit,
        )
        if job is not None:
            self._emit(JobEventType.STARTED, job, detail={"worker_id": worker_id})
        return job

    async def dequeue_next(
        self,
        worker_id: str,
        *,
        shutdown_event: asyncio.Event | None = None,
        idle_interval_seconds: float = 1.0,
    ) -> Job | None:
        """Wait for the next claimable job; return ``None`` once shutdown is signalled."""

        while shutdown_event is None or not shutdown_event.is_set():
            job = await asyncio.to_thread(self.claim_next, worker_id)
            if job is not None:
                return job
            await self._clock.sleep(idle_interval_seconds)
        return None

    def record_submission(self, job: Job, provider_job_id: str) -> Job:
        if not provider_job_id:
            raise InvalidJobStateError("provider job id must not be empty")
        if job.provider_job_id is not None:
            raise InvalidJobStateError(
                f"job {job.id} already has provider job {job.provider_job_id} for this attempt"
            )
        updated = replace(job, provider_job_id=provider_job_id, updated_at=self._clock.now())
        self._save(job, updated)
        self._emit(JobEventType.SUBMITTED, updated)
        return updated

    def update_progress(self, job: Job, progress: float) -> Job:
        value = min(max(progress, job.progress), 1.0)
        if value == job.progress:
            return job
        updated = replace(job, progress=value, updated_at=self._clock.now())
        self._save(job, updated)
        self._emit(JobEventType.PROGRESS, updated, detail={"progress": value})
        return updated

    def complete(
        self,
        job: Job,
        *,
        result_url: str,
        thumbnail_url: str | None = None,
    ) -> Job:
        now = self._clock.now()
        durable = self._has_durable_listeners()
        updated = replace(
            job,
            status=JobStatus.COMPLETED,
            progress=1.0,
            result_url=result_url,
            thumbnail_url=thumbnail_url,
            error_message=None,
            error_kind=None,
            completed_at=now,
            updated_at=now,
            lease_expires_at=None,
            recorded=not durable,
        )
        updated.evict_after = updated.retention_deadline(now)
        self._save(job, updated)
        logger.info(
            "queue.job.completed",
            extra={"job_id": job.id, "attempts": job.attempts, "result_url": result_url},
        )
        self._emit_terminal(JobEventType.COMPLETED, updated, durable=durable)
        self._evict_retained()
        return updated

    def fail(self, job: Job, error: VideoJobError) -> RetryDecision:
        """Record a failed attempt and let the retry policy decide what happens next."""

        return self._finish_attempt(job, error, immediate=False)

    # Retention & monitoring ---------------------------------------------

    def apply_retention(self) -> list[str]:
        """Recover stalled claims, redeliver unrecorded results, then evict.

        Terminal jobs past their retention window or over the count caps are
        evicted unless a durable listener has yet to record them.
        """

        self.recover_stalled()
        self.resync_unrecorded()
        return self._evict_retained()

    def recover_stalled(self, *, limit: int = 100) -> list[str]:
        """Fail the attempts of claims whose lease expired without a heartbeat.

        Each lost attempt goes through the retry policy like any other
        transient failure; a requeued job is claimable again immediately.
        """

        recovered: list[str] = []
        for job in self._backend.list_stalled(now=self._clock.now(), limit=limit):
            logger.warning(
                "queue.job.stalled",
                extra={
                    "job_id": job.id,
                    "worker_id": job.claimed_by,
                    "attempts": job.attempts,
                },
            )
            try:
                self._finish_attempt(job, ProviderUnavailable("worker lost"), immediate=True)
            except InvalidJobStateError:
                logger.info("queue.job.stalled_race", extra={"job_id": job.id})
                continue
            recovered.append(job.id)
        return recovered

    def resync_unrecorded(self, *, limit: int = 100) -> list[str]:
        """Redeliver final events that no durable listener has accepted yet."""

        if not self._has_durable_listeners():
            return []
        synced: list[str] = []
        for job in self._backend.list_unrecorded(limit=limit):
            event_type = (
                JobEventType.COMPLETED if job.status is JobStatus.COMPLETED else JobEventType.FAILED
            )
            event = self._build_event(event_type, job, detail={"resync": True})
            if self._deliver(event, durable_only=True):
                self._backend.mark_recorded(job.id)
                synced.append(job.id)
        if synced:
            logger.info("queue.jobs.resynced", extra={"count": len(synced)})
        return synced

    def counts(self) -> QueueCounts:
        return self._backend.counts(now=self._clock.now())

    def recent_failures(self, limit: int = 5) -> list[FailedJobSample]:
        return [
            FailedJobSample(
                id=job.id,
                provider=job.provider,
                error_message=job.error_message,
                attempts=job.attempts,
                failed_at=job.completed_at or job.updated_at,
            )
            for job in self._backend.list_failed(limit=limit)
        ]

    def queue_health(self, counts: QueueCounts | None = None) -> QueueHealth:
        stats = counts or self.counts()
        finished = stats.completed + stats.failed
        failure_rate = stats.failed / finished if finished else 0.0
        thresholds = self._thresholds
        issues: list[str] = []
        if failure_rate > thresholds.critical_failure_rate:
            issues.append(f"High failure rate (>{thresholds.critical_failure_rate:.0%})")
        elif failure_rate > thresholds.elevated_failure_rate:
            issues.append(f"Elevated failure rate (>{thresholds.elevated_failure_rate:.0%})")
        if stats.active > thresholds.max_active:
            issues.append(f"High number of active jobs (>{thresholds.max_active})")
        if stats.waiting > thresholds.max_waiting:
            issues.append(f"Large backlog of waiting jobs (>{thresholds.max_waiting})")
        if not issues:
            status = HealthStatus.HEALTHY
        elif len(issues) == 1:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.CRITICAL
        return QueueHealth(status=status, issues=tuple(issues), failure_rate=failure_rate)

    def heartbeat(self, worker_id: str) -> None:
        """Mark ``worker_id`` alive and extend the leases of the jobs it holds."""

        now = self._clock.now()
        self._backend.heartbeat(worker_id, now=now, lease_until=now + self._lease)

    def active_workers(self, within: timedelta) -> int:
        return self._backend.count_workers(seen_since=self._clock.now() - within)

    def ping(self) -> None:
        self._backend.ping()

    def close(self) -> None:
        self._backend.close()

    # Internal helpers ---------------------------------------------------

    def _finish_attempt(self, job: Job, error: VideoJobError, *, immediate: bool) -> RetryDecision:
        decision = self._policy.decide(
            error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            base_delay_seconds=job.backoff_seconds,
        )
        now = self._clock.now()
        if decision.retry:
            delay = 0.0 if immediate else decision.delay_seconds
            updated = replace(
                job,
                status=JobStatus.PENDING,
                available_at=now + timedelta(seconds=delay),
                updated_at=now,
                error_message=error.message,
                error_kind=error.kind.value,
                claimed_by=None,
                lease_expires_at=None,
                progress=0.0,
            )
            self._save(job, updated)
            logger.warning(
                "queue.job.retry_scheduled",
                extra={
                    "job_id": job.id,
                    "attempts": job.attempts,
                    "delay_seconds": delay,
                    "error_kind": error.kind.value,
                },
            )
            self._emit(
                JobEventType.RETRY_SCHEDULED,
                updated,
                detail={"delay_seconds": delay, "reason": decision.reason},
            )
            return decision

        durable = self._has_durable_listeners()
        updated = replace(
            job,
            status=JobStatus.FAILED,
            updated_at=now,
            completed_at=now,
            error_message=error.message,
            error_kind=error.kind.value,
            lease_expires_at=None,
            recorded=not durable,
        )
        updated.evict_after = updated.retention_deadline(now)
        self._save(job, updated)
        logger.error(
            "queue.job.failed",
            extra={
                "job_id": job.id,
                "attempts": job.attempts,
                "error_kind": error.kind.value,
                "reason": decision.reason,
            },
        )
        self._emit_terminal(
            JobEventType.FAILED, updated, durable=durable, detail={"reason": decision.reason}
        )
        self._evict_retained()
        return decision

    def _evict_retained(self) -> list[str]:
        removed = self._backend.evict_expired(now=self._clock.now())
        removed += self._backend.trim(status=JobStatus.COMPLETED, keep=self._retention.keep_completed)
        removed += self._backend.trim(status=JobStatus.FAILED, keep=self._retention.keep_failed)
        self._emit_removed(removed, reason="retention")
        return removed

    def _save(self, previous: Job, updated: Job) -> None:
        if updated.status is JobStatus.PROCESSING:
            updated.lease_expires_at = self._clock.now() + self._lease
        saved = self._backend.save(
            updated,
            expected_status=previous.status,
            expected_owner=previous.claimed_by,
        )
        if not saved:
            raise InvalidJobStateError(
                f"job {previous.id} changed concurrently; expected {previous.status.value}"
            )

    def _has_durable_listeners(self) -> bool:
        with self._listeners_lock:
            return any(durable for _, durable in self._listeners)

    def _emit_removed(self, job_ids: Iterable[str], *, reason: str) -> None:
        for job_id in job_ids:
            self._emit(JobEventType.REMOVED, None, job_id=job_id, detail={"reason": reason})

    def _emit_terminal(
        self,
        event_type: JobEventType,
        job: Job,
        *,
        durable: bool,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        delivered = self._emit(event_type, job, detail=detail)
        if not durable:
            return
        if delivered:
            self._backend.mark_recorded(job.id)
            job.recorded = True
        else:
            logger.warning("queue.job.unrecorded", extra={"job_id": job.id})

    def _emit(
        self,
        event_type: JobEventType,
        job: Job | None,
        *,
        job_id: str | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> bool:
        """Publish an event; return whether every durable listener accepted it."""

        return self._deliver(self._build_event(event_type, job, job_id=job_id, detail=detail))

    def _build_event(
        self,
        event_type: JobEventType,
        job: Job | None,
        *,
        job_id: str | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> JobEvent:
        return JobEvent(
            type=event_type,
            job_id=job_id or (job.id if job is not None else ""),
            job=job,
            occurred_at=self._clock.now(),
            detail=dict(detail or {}),
        )

    def _deliver(self, event: JobEvent, *, durable_only: bool = False) -> bool:
        with self._listeners_lock:
            listeners = list(self._listeners)
        delivered = True
        for listener, durable in listeners:
            if durable_only and not durable:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "queue.listener.failed",
                    extra={"job_id": event.job_id, "event": event.type.value},
                )
                if durable:
                    delivered = False
        return delivered


__all__ = [
    "HealthThresholds",
    "JobListener",
    "JobQueue",
    "RetentionLimits",
    "TERMINAL_STATUSES",
]
