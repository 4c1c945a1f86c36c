"""Deterministic provider, storage and download doubles for worker tests."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from src.videojobs.domain.models import ProviderId
from src.videojobs.infrastructure.storage import StorageUploader
from src.videojobs.providers.base import ProviderAdapter, ProviderState, ProviderStatus

PROVIDER_RESULT_BASE = "https://provider.test/videos"
STORAGE_BASE_URL = "https://storage.test/videos"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42video-bytes"


class ScriptedProvider(ProviderAdapter):
    """Adapter whose submit/poll outcomes are scripted per call.

    Script entries are either values to return or exceptions to raise. Once
    a script is exhausted, ``submit`` hands out sequential ids and each
    provider job reports ``polls_until_complete`` intermediate results
    before completing with a deterministic URL.
    """

    def __init__(
        self,
        provider_id: ProviderId = ProviderId.SORA,
        *,
        submit_script: list[Any] | None = None,
        poll_script: list[Any] | None = None,
        polls_until_complete: int = 0,
        poll_gate: asyncio.Event | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.submit_script = list(submit_script or [])
        self.poll_script = list(poll_script or [])
        self.polls_until_complete = polls_until_complete
        self.poll_gate = poll_gate
        self.calls: list[tuple[str, str]] = []
        self.submitted: list[dict[str, Any]] = []
        self.active: set[str] = set()
        self.max_active = 0
        self._counter = 0
        self._polls: dict[str, int] = {}

    async def submit(self, payload: Mapping[str, Any]) -> str:
        self.submitted.append(dict(payload))
        self.calls.append(("submit", str(payload.get("prompt", ""))))
        if self.submit_script:
            outcome = self.submit_script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            provider_job_id = str(outcome)
        else:
            self._counter += 1
            provider_job_id = f"{self.provider_id.value}-job-{self._counter}"
        self.active.add(provider_job_id)
        self.max_active = max(self.max_active, len(self.active))
        return provider_job_id

    async def poll_status(self, provider_job_id: str) -> ProviderStatus:
        self.calls.append(("poll", provider_job_id))
        if self.poll_gate is not None:
            await self.poll_gate.wait()
        if self.poll_script:
            outcome = self.poll_script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome.state is not ProviderState.INTERMEDIATE:
                self.active.discard(provider_job_id)
            return outcome
        polls = self._polls.get(provider_job_id, 0) + 1
        self._polls[provider_job_id] = polls
        if polls <= self.polls_until_complete:
            return ProviderStatus.intermediate("in_progress")
        self.active.discard(provider_job_id)
        return ProviderStatus.completed(f"{PROVIDER_RESULT_BASE}/{provider_job_id}.mp4")

    def estimate_cost(self, payload: Mapping[str, Any]) -> float:
        return 0.0

    async def validate_credentials(self) -> bool:
        return True

    def download_headers(self) -> Mapping[str, str]:
        return {"Authorization": f"Bearer {self.provider_id.value}-key"}


class RecordingStorage(StorageUploader):
    def __init__(self, *, failures: list[BaseException] | None = None) -> None:
        self.uploads: list[dict[str, Any]] = []
        self.failures = list(failures or [])

    async def upload(self, data: bytes, *, filename: str, content_type: str) -> str:
        if self.failures:
            raise self.failures.pop(0)
        self.uploads.append({"data": data, "filename": filename, "content_type": content_type})
        return f"{STORAGE_BASE_URL}/{filename}"


class FakeDownloader:
    """Stand-in for :class:`AssetDownloader` returning fixed bytes."""

    def __init__(self, *, failures: list[BaseException] | None = None) -> None:
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.failures = list(failures or [])

    async def fetch(self, url: str, *, headers: Mapping[str, str] | None = None) -> bytes:
        self.requests.append((url, dict(headers or {})))
        if self.failures:
            raise self.failures.pop(0)
        return VIDEO_BYTES
