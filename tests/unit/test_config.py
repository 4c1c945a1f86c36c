from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.videojobs.core.config import AppConfig

pytestmark = pytest.mark.unit


def test_defaults_are_usable():
    config = AppConfig()

    assert config.max_attempts == 3
    assert config.worker_concurrency == 2
    assert config.poll_interval_seconds == 5.0
    assert config.rate_limit_max_jobs == 10
    assert config.rate_limit_window_seconds == 60.0
    assert config.claim_lease_seconds == 300.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("VIDEOJOBS_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("VIDEOJOBS_QUEUE_DSN", "sqlite:///:memory:")
    monkeypatch.setenv("VIDEOJOBS_PROVIDER_KEYS", '{"sora": "sk-env"}')

    config = AppConfig.build_default()

    assert config.max_attempts == 5
    assert config.queue_dsn == "sqlite:///:memory:"
    assert config.provider_keys == {"sora": "sk-env"}


def test_backoff_cap_must_cover_base():
    with pytest.raises(ValidationError):
        AppConfig(backoff_base_seconds=10, backoff_cap_seconds=5)


@pytest.mark.parametrize(
    "overrides",
    [{"worker_concurrency": 0}, {"poll_progress_cap": 1.0}, {"max_attempts": 0}],
)
def test_out_of_range_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        AppConfig(**overrides)


def test_claim_lease_must_outlast_heartbeat_interval():
    with pytest.raises(ValidationError):
        AppConfig(heartbeat_interval_seconds=30, claim_lease_seconds=30)

    config = AppConfig(heartbeat_interval_seconds=30, claim_lease_seconds=90)
    assert config.claim_lease_seconds == 90
