"""In-process queue backend used by tests and mock mode."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Deque, Iterable

from ...domain.models import Job, JobStatus, QueueCounts, QueueState, StartRateLimit
from .base import QueueBackend


class InMemoryQueueBackend(QueueBackend):
    """Dictionary-backed queue guarded by a single lock.

    Stored jobs are never handed out directly; callers always receive
    copies so concurrent workers cannot mutate shared state by accident.
    The claim log is shared by every worker of the process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._heartbeats: dict[str, datetime] = {}
        self._claims: Deque[datetime] = deque()

    # Queue operations ---------------------------------------------------

    def insert(self, job: Job) -> tuple[Job, bool]:
        with self._lock:
            existing = self._jobs.get(job.id)
            if existing is not None:
                return _copy(existing), False
            self._jobs[job.id] = _copy(job)
            return _copy(job), True

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return _copy(job) if job is not None else None

    def claim_next(
        self,
        *,
        now: datetime,
        worker_id: str,
        lease_until: datetime | None = None,
        rate_limit: StartRateLimit | None = None,
    ) -> Job | None:
        with self._lock:
            if rate_limit is not None:
                cutoff = rate_limit.window_start(now)
                while self._claims and self._claims[0] <= cutoff:
                    self._claims.popleft()
                if len(self._claims) >= rate_limit.max_jobs:
                    return None
            candidates = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.PENDING
                and job.available_at <= now
                and job.attempts < job.max_attempts
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda item: (item.available_at, item.created_at, item.id))
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.claimed_by = worker_id
            job.started_at = now
            job.updated_at = now
            job.provider_job_id = None
            job.progress = 0.0
            job.lease_expires_at = lease_until
            if rate_limit is not None:
                self._claims.append(now)
            return _copy(job)

    def save(
        self,
        job: Job,
        *,
        expected_status: JobStatus,
        expected_owner: str | None,
    ) -> bool:
        with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                return False
            if current.status is not expected_status or current.claimed_by != expected_owner:
                return False
            self._jobs[job.id] = _copy(job)
            return True

    def delete_pending(self, job_id: str) -> bool:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None or current.status is not JobStatus.PENDING:
                return False
            del self._jobs[job_id]
            return True

    def list_stalled(self, *, now: datetime, limit: int) -> list[Job]:
        with self._lock:
            stalled = sorted(
                (job for job in self._jobs.values() if job.lease_expired(now)),
                key=lambda item: (item.lease_expires_at, item.id),
            )
            return [_copy(job) for job in stalled[: max(0, limit)]]

    def list_unrecorded(self, *, limit: int) -> list[Job]:
        with self._lock:
            pending = sorted(
                (job for job in self._jobs.values() if job.is_terminal and not job.recorded),
                key=lambda item: (item.completed_at or item.updated_at, item.id),
            )
            return [_copy(job) for job in pending[: max(0, limit)]]

    def mark_recorded(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.is_terminal:
                job.recorded = True

    def evict(
        self,
        *,
        statuses: Iterable[JobStatus],
        finished_before: datetime,
        limit: int,
    ) -> list[str]:
        wanted = set(statuses)
        with self._lock:
            matches = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status in wanted
                    and job.recorded
                    and job.completed_at is not None
                    and job.completed_at < finished_before
                ),
                key=lambda item: item.completed_at,
            )[: max(0, limit)]
            for job in matches:
                del self._jobs[job.id]
            return [job.id for job in matches]

    def evict_expired(self, *, now: datetime) -> list[str]:
        with self._lock:
            expired = [
                job.id
                for job in self._jobs.values()
                if job.is_terminal
                and job.recorded
                and job.evict_after is not None
                and job.evict_after <= now
            ]
            for job_id in expired:
                del self._jobs[job_id]
            return expired

    def trim(self, *, status: JobStatus, keep: int) -> list[str]:
        with self._lock:
            ordered = sorted(
                (job for job in self._jobs.values() if job.status is status),
                key=lambda item: (item.completed_at or item.updated_at),
                reverse=True,
            )
            surplus = [job.id for job in ordered[max(0, keep):] if job.recorded]
            for job_id in surplus:
                del self._jobs[job_id]
            return surplus

    # Monitoring ---------------------------------------------------------

    def counts(self, *, now: datetime) -> QueueCounts:
        tally = {state: 0 for state in QueueState}
        with self._lock:
            for job in self._jobs.values():
                tally[job.queue_state(now)] += 1
        return QueueCounts(
            waiting=tally[QueueState.WAITING],
            active=tally[QueueState.ACTIVE],
            completed=tally[QueueState.COMPLETED],
            failed=tally[QueueState.FAILED],
            delayed=tally[QueueState.DELAYED],
        )

    def list_failed(self, *, limit: int) -> list[Job]:
        with self._lock:
            failed = sorted(
                (job for job in self._jobs.values() if job.status is JobStatus.FAILED),
                key=lambda item: (item.completed_at or item.updated_at),
                reverse=True,
            )
            return [_copy(job) for job in failed[: max(0, limit)]]

    def heartbeat(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease_until: datetime | None = None,
    ) -> None:
        with self._lock:
            self._heartbeats[worker_id] = now
            if lease_until is None:
                return
            for job in self._jobs.values():
                if job.status is JobStatus.PROCESSING and job.claimed_by == worker_id:
                    job.lease_expires_at = lease_until

    def count_workers(self, *, seen_since: datetime) -> int:
        with self._lock:
            return sum(1 for seen in self._heartbeats.values() if seen >= seen_since)

    def ping(self) -> None:
        return None


def _copy(job: Job) -> Job:
    return replace(job, payload=dict(job.payload))


__all__ = ["InMemoryQueueBackend"]
