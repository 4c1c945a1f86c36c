"""Persistence of job records that outlive queue retention."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.orm import Session

from ..db.db_models import VideoJobModel
from ..domain.models import Job, JobEvent, JobEventType, JobStatus


@dataclass(slots=True)
class JobRecord:
    """Durable view of a job as stored by the repository."""

    id: str
    provider: str
    status: str
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    provider_job_id: str | None = None
    result_url: str | None = None
    thumbnail_url: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    attempts: int = 0
    progress: float = 0.0
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
            provider=job.provider.value,
            status=job.status.value,
            payload=dict(job.payload),
            created_at=job.created_at,
            updated_at=job.updated_at,
            provider_job_id=job.provider_job_id,
            result_url=job.result_url,
            thumbnail_url=job.thumbnail_url,
            error_message=job.error_message,
            error_kind=job.error_kind,
            attempts=job.attempts,
            progress=job.progress,
            completed_at=job.completed_at,
        )


UPDATABLE_FIELDS = frozenset(
    field.name for field in fields(JobRecord) if field.name not in ("id", "provider", "created_at")
)


def _check_fields(values: Mapping[str, Any]) -> None:
    unknown = set(values) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported job fields: {', '.join(sorted(unknown))}")


class JobRepository(ABC):
    """Narrow persistence interface the orchestration core depends on."""

    @abstractmethod
    def create(self, job: Job) -> JobRecord:
        """Persist a newly enqueued job."""

    @abstractmethod
    def update(self, job_id: str, values: Mapping[str, Any]) -> JobRecord:
        """Apply a partial update; raise ``KeyError`` for unknown ids."""

    @abstractmethod
    def get(self, job_id: str) -> JobRecord | None:
        """Return the stored record or ``None``."""


class SqlAlchemyJobRepository(JobRepository):
    """Manage ``video_jobs`` rows through a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def create(self, job: Job) -> JobRecord:
        record = JobRecord.from_job(job)
        with self._session_factory() as session:
            session.merge(VideoJobModel(**_record_columns(record)))
            session.commit()
        return record

    def update(self, job_id: str, values: Mapping[str, Any]) -> JobRecord:
        _check_fields(values)
        with self._session_factory() as session:
            model = session.get(VideoJobModel, job_id)
            if model is None:
                raise KeyError(f"Job '{job_id}' not found")
            for name, value in values.items():
                setattr(model, name, value)
            session.commit()
            return _to_record(model)

    def get(self, job_id: str) -> JobRecord | None:
        with self._session_factory() as session:
            model = session.get(VideoJobModel, job_id)
            return _to_record(model) if model is not None else None


class InMemoryJobRepository(JobRepository):
    """Dictionary-backed repository for tests and mock mode."""

    def __init__(self) -> None:
        self._records: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> JobRecord:
        record = JobRecord.from_job(job)
        with self._lock:
            self._records[job.id] = record
        return replace(record)

    def update(self, job_id: str, values: Mapping[str, Any]) -> JobRecord:
        _check_fields(values)
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise KeyError(f"Job '{job_id}' not found")
            updated = replace(record, **dict(values))
            self._records[job_id] = updated
            return replace(updated)

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            record = self._records.get(job_id)
            return replace(record) if record is not None else None


def _record_columns(record: JobRecord) -> dict[str, Any]:
    return {field.name: getattr(record, field.name) for field in fields(JobRecord)}


def _to_record(model: VideoJobModel) -> JobRecord:
    return JobRecord(**{field.name: getattr(model, field.name) for field in fields(JobRecord)})


class JobRepositorySink:
    """Queue listener that mirrors job events into a :class:`JobRepository`.

    Every event carrying a job writes its full state, so redelivering a
    final event is safe.
    """

    def __init__(self, repository: JobRepository) -> None:
        self._repository = repository

    def __call__(self, event: JobEvent) -> None:
        if event.type is JobEventType.REMOVED:
            return
        if event.type is JobEventType.CREATED and event.job is not None:
            self._repository.create(event.job)
            return
        if event.type is JobEventType.CANCELLED:
            self._repository.update(
                event.job_id,
                {
                    "status": JobStatus.FAILED.value,
                    "error_message": "cancelled before execution",
                    "error_kind": "cancelled",
                    "updated_at": event.occurred_at,
                    "completed_at": event.occurred_at,
                },
            )
            return
        if event.job is None:
            return
        try:
            self._repository.update(event.job_id, self._fields_for(event.job))
        except KeyError:
            # The creation event never reached the repository.
            self._repository.create(event.job)

    @staticmethod
    def _fields_for(job: Job) -> dict[str, Any]:
        return {
            "status": job.status.value,
            "provider_job_id": job.provider_job_id,
            "result_url": job.result_url,
            "thumbnail_url": job.thumbnail_url,
            "error_message": job.error_message,
            "error_kind": job.error_kind,
            "attempts": job.attempts,
            "progress": job.progress,
            "updated_at": job.updated_at,
            "completed_at": job.completed_at,
        }


__all__ = [
    "InMemoryJobRepository",
    "JobRecord",
    "JobRepository",
    "JobRepositorySink",
    "SqlAlchemyJobRepository",
]
