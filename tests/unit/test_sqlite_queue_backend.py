from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from src.videojobs.clock import FakeClock
from src.videojobs.domain.models import JobEventType, JobOptions, JobStatus, QueueCounts, StartRateLimit
from src.videojobs.errors import InvalidJobStateError, ProviderUnavailable, QueueUnavailableError
from src.videojobs.infrastructure.queue import (
    InMemoryQueueBackend,
    QueueBackendConfig,
    SQLiteQueueBackend,
    build_queue_backend,
)
from src.videojobs.services.job_queue import JobQueue
from src.videojobs.services.retry_policy import RetryPolicy

pytestmark = pytest.mark.unit


@pytest.fixture
def backend():
    backend = SQLiteQueueBackend(QueueBackendConfig(dsn=":memory:"))
    yield backend
    backend.close()


@pytest.fixture
def sqlite_queue(backend, clock: FakeClock) -> JobQueue:
    return JobQueue(backend, retry_policy=RetryPolicy(jitter_seconds=0.0), clock=clock)


def test_build_queue_backend_selects_by_dsn():
    memory = build_queue_backend(QueueBackendConfig(dsn="memory://"))
    sqlite = build_queue_backend(QueueBackendConfig(dsn="sqlite:///:memory:"))
    try:
        assert isinstance(memory, InMemoryQueueBackend)
        assert isinstance(sqlite, SQLiteQueueBackend)
    finally:
        sqlite.close()


def test_insert_is_idempotent_and_payload_round_trips(sqlite_queue):
    payload = {"prompt": "a fox", "seconds": 8, "extra": {"seed": 7}}

    first = sqlite_queue.enqueue("job-1", "sora", payload)
    second = sqlite_queue.enqueue("job-1", "veo", {"prompt": "other"})

    assert first.created is True
    assert second.created is False
    assert sqlite_queue.get_job("job-1").payload == payload


def test_claim_and_complete(sqlite_queue, clock):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"})

    job = sqlite_queue.claim_next("worker-a")
    job = sqlite_queue.record_submission(job, "video_1")
    sqlite_queue.complete(job, result_url="https://storage.test/job-1.mp4")

    stored = sqlite_queue.get_job("job-1")
    assert stored.status is JobStatus.COMPLETED
    assert stored.attempts == 1
    assert stored.claimed_by == "worker-a"
    assert stored.completed_at == clock.now()
    assert stored.evict_after == clock.now() + timedelta(seconds=3600)
    assert sqlite_queue.claim_next("worker-b") is None


def test_delayed_retry_is_not_claimable_early(sqlite_queue, clock):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    sqlite_queue.fail(sqlite_queue.claim_next("w"), ProviderUnavailable("503"))

    assert sqlite_queue.counts() == QueueCounts(delayed=1)
    assert sqlite_queue.claim_next("w") is None
    clock.advance(2)
    assert sqlite_queue.claim_next("w").attempts == 2


def test_stale_owner_cannot_overwrite(sqlite_queue):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    job = sqlite_queue.claim_next("worker-a")
    sqlite_queue.complete(job, result_url="https://storage.test/job-1.mp4")

    with pytest.raises(InvalidJobStateError):
        sqlite_queue.update_progress(job, 0.5)


def test_cancel_only_pending(sqlite_queue):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    sqlite_queue.enqueue("job-2", "sora", {"prompt": "a fox"})
    sqlite_queue.claim_next("w")

    assert sqlite_queue.cancel("job-2").value == "cancelled"
    assert sqlite_queue.cancel("job-1").value == "in_progress"


def test_clean_and_heartbeats(sqlite_queue, clock):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    sqlite_queue.complete(sqlite_queue.claim_next("w"), result_url="https://storage.test/job-1.mp4")
    sqlite_queue.heartbeat("w")
    clock.advance(120)

    assert sqlite_queue.clean(timedelta(seconds=60)) == ["job-1"]
    assert sqlite_queue.active_workers(timedelta(seconds=60)) == 0
    assert sqlite_queue.active_workers(timedelta(seconds=300)) == 1


def test_closed_connection_is_reported_as_unavailable():
    backend = SQLiteQueueBackend(QueueBackendConfig(dsn=":memory:"))
    backend.close()

    with pytest.raises(QueueUnavailableError):
        backend.ping()


@pytest.fixture
def shared_backends(tmp_path):
    """Two independent connections to one database file, like two worker processes."""

    dsn = str(tmp_path / "queue.db")
    backends = [SQLiteQueueBackend(QueueBackendConfig(dsn=dsn)) for _ in range(2)]
    yield backends
    for backend in backends:
        backend.close()


def _queue_for(backend, clock, **kwargs) -> JobQueue:
    return JobQueue(backend, retry_policy=RetryPolicy(jitter_seconds=0.0), clock=clock, **kwargs)


def test_concurrent_claimers_never_share_a_job(shared_backends, clock):
    queues = [_queue_for(backend, clock) for backend in shared_backends]
    for index in range(20):
        queues[0].enqueue(f"job-{index:02d}", "sora", {"prompt": "a fox"})
    start = threading.Barrier(8)

    def _drain(worker: int) -> list[str]:
        queue = queues[worker % 2]
        start.wait()
        claimed = []
        while True:
            job = queue.claim_next(f"worker-{worker}")
            if job is None:
                return claimed
            claimed.append(job.id)

    with ThreadPoolExecutor(max_workers=8) as pool:
        batches = list(pool.map(_drain, range(8)))

    claimed = [job_id for batch in batches for job_id in batch]
    assert sorted(claimed) == [f"job-{index:02d}" for index in range(20)]
    assert queues[1].counts() == QueueCounts(active=20)
    for worker, batch in enumerate(batches):
        for job_id in batch:
            stored = queues[0].get_job(job_id)
            assert stored.claimed_by == f"worker-{worker}"
            assert stored.attempts == 1


def test_crashed_worker_claim_is_recovered(sqlite_queue, clock):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    assert sqlite_queue.claim_next("crashed-worker") is not None

    clock.advance(10 * 24 * 3600)
    sqlite_queue.apply_retention()
    sqlite_queue.clean(timedelta(0))
    other = sqlite_queue.claim_next("healthy-worker")

    assert other is not None
    assert other.id == "job-1"
    assert other.attempts == 2
    assert other.claimed_by == "healthy-worker"
    assert other.lease_expires_at == clock.now() + timedelta(seconds=300)


def test_heartbeat_renews_claim_lease(backend, clock):
    queue = _queue_for(backend, clock, claim_lease_seconds=60)
    queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    queue.claim_next("worker-a")

    clock.advance(45)
    queue.heartbeat("worker-a")
    clock.advance(45)
    assert queue.recover_stalled() == []

    clock.advance(16)
    assert queue.recover_stalled() == ["job-1"]
    stored = queue.get_job("job-1")
    assert stored.status is JobStatus.PENDING
    assert stored.error_message == "worker lost"
    assert stored.lease_expires_at is None


def test_lost_claims_count_against_max_attempts(sqlite_queue, clock):
    sqlite_queue.enqueue("job-1", "sora", {"prompt": "a fox"}, JobOptions(max_attempts=1))
    sqlite_queue.claim_next("crashed-worker")

    clock.advance(301)
    sqlite_queue.apply_retention()

    stored = sqlite_queue.get_job("job-1")
    assert stored.status is JobStatus.FAILED
    assert stored.error_kind == "transient"
    assert sqlite_queue.claim_next("healthy-worker") is None


def test_unrecorded_terminal_job_is_not_evicted(backend, clock):
    queue = _queue_for(backend, clock)
    mirror_down = True
    delivered = []

    def mirror(event):
        if mirror_down and event.type is JobEventType.COMPLETED:
            raise RuntimeError("repository down")
        delivered.append(event.type)

    queue.subscribe(mirror, durable=True)
    queue.enqueue("job-1", "sora", {"prompt": "a fox"})
    queue.complete(queue.claim_next("w"), result_url="https://storage.test/job-1.mp4")
    assert queue.get_job("job-1").recorded is False

    clock.advance(7200)
    assert queue.clean(timedelta(0)) == []
    assert queue.apply_retention() == []
    assert queue.get_job("job-1").status is JobStatus.COMPLETED

    mirror_down = False
    assert queue.apply_retention() == ["job-1"]
    assert delivered[-1] is JobEventType.COMPLETED


def test_start_rate_limit_is_shared_across_connections(shared_backends, clock):
    limit = StartRateLimit(max_jobs=2, window_seconds=60)
    first, second = (_queue_for(backend, clock, rate_limit=limit) for backend in shared_backends)
    for index in range(3):
        first.enqueue(f"job-{index}", "sora", {"prompt": "a fox"})

    assert first.claim_next("worker-a") is not None
    clock.advance(10)
    assert second.claim_next("worker-b") is not None
    assert second.claim_next("worker-b") is None
    assert first.claim_next("worker-a") is None

    clock.advance(50)
    assert second.claim_next("worker-b").id == "job-2"
    assert first.claim_next("worker-a") is None
