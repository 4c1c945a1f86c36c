from __future__ import annotations

import pytest

from src.videojobs.clock import FakeClock
from src.videojobs.repositories.job_repository import InMemoryJobRepository, JobRepositorySink
from src.videojobs.services.job_queue import JobQueue

from tests.mocks.queue import EventRecorder, build_test_queue


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock: FakeClock) -> JobQueue:
    return build_test_queue(clock)


@pytest.fixture
def events(queue: JobQueue) -> EventRecorder:
    recorder = EventRecorder()
    queue.subscribe(recorder)
    return recorder


@pytest.fixture
def repository(queue: JobQueue) -> InMemoryJobRepository:
    repo = InMemoryJobRepository()
    queue.subscribe(JobRepositorySink(repo))
    return repo
