"""Job record persistence."""

from .job_repository import (
    InMemoryJobRepository,
    JobRecord,
    JobRepository,
    JobRepositorySink,
    SqlAlchemyJobRepository,
)

__all__ = [
    "InMemoryJobRepository",
    "JobRecord",
    "JobRepository",
    "JobRepositorySink",
    "SqlAlchemyJobRepository",
]
