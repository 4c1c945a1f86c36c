"""Application wiring with in-memory collaborators for HTTP tests."""

from __future__ import annotations

from typing import Any

from src.videojobs.clock import FakeClock
from src.videojobs.core.config import AppConfig
from src.videojobs.infrastructure.queue.memory import InMemoryQueueBackend
from src.videojobs.repositories.job_repository import InMemoryJobRepository
from src.videojobs.services.container import OrchestratorContext

from tests.mocks.providers import FakeDownloader, RecordingStorage


def build_test_context(clock: FakeClock, **config_overrides: Any) -> OrchestratorContext:
    settings: dict[str, Any] = {"backoff_jitter_seconds": 0.0, "retain_completed_seconds": 10**7}
    settings.update(config_overrides)
    return OrchestratorContext.from_config(
        AppConfig(**settings),
        clock=clock,
        backend=InMemoryQueueBackend(),
        repository=InMemoryJobRepository(),
        providers={},
        storage=RecordingStorage(),
        downloader=FakeDownloader(),
    )
