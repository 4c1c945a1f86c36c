"""Storage contract implemented by every job queue backend.

Backends are synchronous; :class:`~src.videojobs.services.job_queue.JobQueue`
calls them from worker threads. Every method must be atomic with respect to
concurrent callers, in particular :meth:`QueueBackend.claim_next` must never
hand the same job to two workers and must enforce the start rate limit for
every worker sharing the storage.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from ...domain.models import Job, JobStatus, QueueCounts, StartRateLimit


class QueueBackend(ABC):
    """Durable job table plus worker heartbeats and the claim log."""

    @abstractmethod
    def insert(self, job: Job) -> tuple[Job, bool]:
        """Insert ``job`` unless its id exists; return the stored job and whether it was created."""

    @abstractmethod
    def get(self, job_id: str) -> Job | None:
        """Return a copy of the stored job."""

    @abstractmethod
    def claim_next(
        self,
        *,
        now: datetime,
        worker_id: str,
        lease_until: datetime | None = None,
        rate_limit: StartRateLimit | None = None,
    ) -> Job | None:
        """Atomically move the oldest eligible pending job to ``processing``.

        Eligible means ``available_at <= now`` and ``attempts < max_attempts``.
        The claim increments ``attempts``, clears the previous attempt's
        provider job id and progress, records ``claimed_by`` and sets the
        lease. When ``rate_limit`` is given and the shared claim log already
        holds ``max_jobs`` claims inside the window, nothing is claimed.
        """

    @abstractmethod
    def save(
        self,
        job: Job,
        *,
        expected_status: JobStatus,
        expected_owner: str | None,
    ) -> bool:
        """Persist ``job`` only when the stored row still matches the expectations."""

    @abstractmethod
    def delete_pending(self, job_id: str) -> bool:
        """Delete ``job_id`` when it is still pending; return whether it was removed."""

    @abstractmethod
    def list_stalled(self, *, now: datetime, limit: int) -> list[Job]:
        """Return processing jobs whose lease expired at or before ``now``."""

    @abstractmethod
    def list_unrecorded(self, *, limit: int) -> list[Job]:
        """Return terminal jobs the job repository has not accepted yet."""

    @abstractmethod
    def mark_recorded(self, job_id: str) -> None:
        """Flag a terminal job as persisted by the job repository."""

    @abstractmethod
    def evict(
        self,
        *,
        statuses: Iterable[JobStatus],
        finished_before: datetime,
        limit: int,
    ) -> list[str]:
        """Delete up to ``limit`` recorded terminal jobs finished before the cutoff, oldest first."""

    @abstractmethod
    def evict_expired(self, *, now: datetime) -> list[str]:
        """Delete recorded terminal jobs whose ``evict_after`` deadline has passed."""

    @abstractmethod
    def trim(self, *, status: JobStatus, keep: int) -> list[str]:
        """Delete recorded jobs in ``status`` beyond the ``keep`` most recently finished."""

    @abstractmethod
    def counts(self, *, now: datetime) -> QueueCounts:
        """Return job counts grouped by queue state."""

    @abstractmethod
    def list_failed(self, *, limit: int) -> list[Job]:
        """Return the most recently failed jobs, newest first."""

    @abstractmethod
    def heartbeat(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease_until: datetime | None = None,
    ) -> None:
        """Record that ``worker_id`` is alive and extend the leases of its claims."""

    @abstractmethod
    def count_workers(self, *, seen_since: datetime) -> int:
        """Count workers whose last heartbeat is not older than ``seen_since``."""

    @abstractmethod
    def ping(self) -> None:
        """Raise :class:`QueueUnavailableError` when storage is unreachable."""

    def close(self) -> None:
        """Release connections held by the backend."""


__all__ = ["QueueBackend"]
