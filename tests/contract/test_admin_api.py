from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.videojobs.domain.models import JobOptions, ProviderId
from src.videojobs.errors import InvalidRequest, QueueUnavailableError
from src.videojobs.main import create_app

from tests.mocks.app import build_test_context

pytestmark = pytest.mark.contract


@pytest.fixture
def context(clock):
    return build_test_context(clock)


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as test_client:
        yield test_client


def _failed_job(context, job_id: str, *, max_attempts: int = 3) -> None:
    options = JobOptions(max_attempts=max_attempts, retain_failed_seconds=10**7)
    context.queue.enqueue(job_id, ProviderId.VEO, {"prompt": "fox"}, options)
    job = context.queue.claim_next("worker-a")
    context.queue.fail(job, InvalidRequest("Veo prompt is required"))


def test_overview_of_empty_queue(client):
    response = client.get("/api/admin/queue")

    assert response.status_code == 200
    payload = response.json()
    assert payload["stats"] == {
        "waiting": 0,
        "active": 0,
        "completed": 0,
        "failed": 0,
        "delayed": 0,
        "total": 0,
    }
    assert payload["health"] == {"status": "healthy", "issues": [], "failureRate": 0.0}
    assert payload["failedJobs"] == []
    assert payload["timestamp"].startswith("2025-01-01T00:00:00")


def test_overview_reports_failures_and_health(client, context):
    context.queue.enqueue("ok", ProviderId.SORA, {"prompt": "fox"})
    job = context.queue.claim_next("worker-a")
    context.queue.complete(job, result_url="https://storage.test/videos/ok.mp4")
    _failed_job(context, "broken")
    context.queue.enqueue("waiting", ProviderId.SORA, {"prompt": "fox"})

    payload = client.get("/api/admin/queue").json()

    assert payload["stats"]["completed"] == 1
    assert payload["stats"]["failed"] == 1
    assert payload["stats"]["waiting"] == 1
    assert payload["stats"]["total"] == 3
    assert payload["health"]["status"] == "degraded"
    assert payload["health"]["failureRate"] == 0.5
    assert payload["health"]["issues"] == ["Elevated failure rate (>20%)"]
    [failed] = payload["failedJobs"]
    assert failed["id"] == "broken"
    assert failed["provider"] == "veo"
    assert failed["errorMessage"] == "Veo prompt is required"
    assert failed["attempts"] == 1


def test_manual_retry_resets_failed_job(client, context):
    _failed_job(context, "broken")

    response = client.post("/api/admin/queue/retry/broken")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "pending"
    assert payload["attempts"] == 1
    assert "errorMessage" not in payload
    assert context.queue.claim_next("worker-a").id == "broken"


def test_manual_retry_conflicts(client, context):
    _failed_job(context, "exhausted", max_attempts=1)
    context.queue.enqueue("pending", ProviderId.SORA, {"prompt": "fox"})

    exhausted = client.post("/api/admin/queue/retry/exhausted")
    pending = client.post("/api/admin/queue/retry/pending")
    missing = client.post("/api/admin/queue/retry/missing")

    assert exhausted.status_code == 409
    assert exhausted.json()["error"]["code"] == "retries_exhausted"
    assert pending.status_code == 409
    assert pending.json()["error"]["code"] == "invalid_state"
    assert missing.status_code == 404


def test_unreachable_queue_maps_to_503(client, context, monkeypatch):
    def _down():
        raise QueueUnavailableError("queue database unreachable")

    monkeypatch.setattr(context.queue, "counts", _down)

    response = client.get("/api/admin/queue")

    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"
    assert response.json()["error"]["code"] == "queue_unavailable"


def test_worker_health_endpoint(client, context):
    unhealthy = client.get("/api/health/worker")
    context.queue.heartbeat("worker-a")
    healthy = client.get("/api/health/worker")

    assert unhealthy.status_code == 503
    assert unhealthy.json()["healthy"] is False
    assert unhealthy.json()["activeWorkerCount"] == 0
    assert healthy.status_code == 200
    assert healthy.json()["healthy"] is True
    assert healthy.json()["activeWorkerCount"] == 1
    assert healthy.json()["queueReachable"] is True
