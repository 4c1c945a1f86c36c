import importlib.util
import json
import sys
from datetime import timedelta
from pathlib import Path

from src.videojobs.domain.models import ProviderId

from tests.mocks.app import build_test_context


PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _load(name: str):
    spec = importlib.util.spec_from_file_location(f"{name}_module", PROJECT_ROOT / "scripts" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    sys.modules[f"{name}_module"] = module
    spec.loader.exec_module(module)
    return module


cleanup_queue = _load("cleanup_queue")
health_check = _load("health_check")


def _memory_env(monkeypatch):
    monkeypatch.setenv("VIDEOJOBS_QUEUE_DSN", "memory://")
    monkeypatch.setenv("VIDEOJOBS_DATABASE_URL", "sqlite:///:memory:")


def _finished_context(clock):
    context = build_test_context(clock)
    context.queue.enqueue("old", ProviderId.SORA, {"prompt": "fox"})
    job = context.queue.claim_next("worker-a")
    context.queue.complete(job, result_url="https://storage.test/videos/old.mp4")
    clock.advance(7200)
    return context


def test_perform_cleanup_dry_run(clock):
    context = _finished_context(clock)

    summary = cleanup_queue.perform_cleanup(
        context, older_than=timedelta(hours=1), limit=10, dry_run=True
    )

    assert summary.dry_run is True
    assert summary.removed == 0
    assert summary.terminal_remaining == 1
    assert context.queue.get_status("old") is not None


def test_perform_cleanup_evicts(clock):
    context = _finished_context(clock)

    summary = cleanup_queue.perform_cleanup(
        context, older_than=timedelta(hours=1), limit=10, dry_run=False
    )

    assert summary.removed == 1
    assert summary.terminal_remaining == 0
    assert context.queue.get_status("old") is None


def test_parse_args_defaults():
    args = cleanup_queue.parse_args([])

    assert args.dry_run is False
    assert args.older_than_hours is None
    assert args.limit is None


def test_main_runs_against_configured_queue(monkeypatch, capsys):
    _memory_env(monkeypatch)

    exit_code = cleanup_queue.main(["--older-than-hours", "2", "--limit", "5"])

    assert exit_code == 0
    assert "cleanup done, removed=0, terminal_remaining=0" in capsys.readouterr().out


def test_main_reports_invalid_configuration(monkeypatch, capsys):
    _memory_env(monkeypatch)
    monkeypatch.setenv("VIDEOJOBS_MAX_ATTEMPTS", "0")

    exit_code = cleanup_queue.main(["--dry-run"])

    assert exit_code == 2
    assert "cleanup failed" in capsys.readouterr().err


def test_health_check_without_workers_is_unhealthy(monkeypatch, capsys):
    _memory_env(monkeypatch)

    exit_code = health_check.main([])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert payload["healthy"] is False
    assert payload["queueReachable"] is True
    assert payload["activeWorkerCount"] == 0
