from __future__ import annotations

from datetime import timedelta

import pytest

from src.videojobs.services.health import HealthService

from tests.mocks.queue import build_test_queue

pytestmark = pytest.mark.unit


def test_unhealthy_without_recent_heartbeats(clock):
    queue = build_test_queue(clock)
    service = HealthService(queue, heartbeat_window=timedelta(seconds=60), clock=clock)

    report = service.check()

    assert report.queue_reachable is True
    assert report.active_worker_count == 0
    assert report.healthy is False


def test_healthy_with_live_worker_and_stale_workers_ignored(clock):
    queue = build_test_queue(clock)
    service = HealthService(queue, heartbeat_window=timedelta(seconds=60), clock=clock)
    queue.heartbeat("stale")
    clock.advance(120)
    queue.heartbeat("live")

    report = service.check()

    assert report.healthy is True
    assert report.active_worker_count == 1
    payload = report.as_dict()
    assert payload["activeWorkerCount"] == 1
    assert payload["queueReachable"] is True
    assert payload["timestamp"] == clock.now().isoformat()
    assert "error" not in payload


def test_unreachable_queue_reports_error(clock, monkeypatch):
    queue = build_test_queue(clock)

    def _down() -> None:
        raise ConnectionError("queue offline")

    monkeypatch.setattr(queue, "ping", _down)

    report = HealthService(queue, clock=clock).check()

    assert report.healthy is False
    assert report.queue_reachable is False
    assert report.as_dict()["error"] == "queue offline"
