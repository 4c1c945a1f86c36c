from __future__ import annotations

import httpx
import pytest

from src.videojobs.errors import (
    AuthError,
    InvalidRequest,
    PolicyViolation,
    ProviderUnavailable,
    RateLimited,
)
from src.videojobs.providers.base import ProviderState
from src.videojobs.providers.sora import SoraAdapter

from tests.mocks.http import DummyAsyncClient, DummyHTTPResponse

pytestmark = pytest.mark.unit


@pytest.fixture
def adapter() -> SoraAdapter:
    return SoraAdapter(api_key="sk-test", base_url="https://api.openai.test/v1")


def _install(monkeypatch, responses) -> DummyAsyncClient:
    client = DummyAsyncClient(responses)
    monkeypatch.setattr("httpx.AsyncClient", client)
    return client


@pytest.mark.asyncio
async def test_submit_posts_video_request(monkeypatch, adapter):
    client = _install(monkeypatch, [DummyHTTPResponse(200, {"id": "video_abc", "status": "queued"})])

    video_id = await adapter.submit({"prompt": "  a paper boat  ", "seconds": 8, "size": "720x1280"})

    assert video_id == "video_abc"
    request = client.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://api.openai.test/v1/videos"
    assert request["headers"]["Authorization"] == "Bearer sk-test"
    assert request["json"] == {
        "model": "sora-2",
        "prompt": "a paper boat",
        "seconds": "8",
        "size": "720x1280",
    }
    assert client.init_kwargs == [{"timeout": 30.0}]


@pytest.mark.asyncio
async def test_submit_validates_before_network(monkeypatch, adapter):
    client = _install(monkeypatch, [])

    with pytest.raises(InvalidRequest) as excinfo:
        await adapter.submit({"prompt": "a boat", "seconds": 5})

    assert excinfo.value.code == "unsupported_duration"
    assert client.requests == []


@pytest.mark.parametrize(
    "payload",
    [
        {"prompt": ""},
        {"prompt": "ok", "model": "sora-9"},
        {"prompt": "ok", "size": "640x480"},
        {"prompt": "ok", "duration": "long"},
    ],
)
def test_build_request_rejects_bad_payloads(adapter, payload):
    with pytest.raises(InvalidRequest):
        adapter.build_request(payload)


@pytest.mark.asyncio
async def test_submit_without_id_is_transient(monkeypatch, adapter):
    _install(monkeypatch, [DummyHTTPResponse(200, {"status": "queued"})])

    with pytest.raises(ProviderUnavailable):
        await adapter.submit({"prompt": "a boat"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (DummyHTTPResponse(401, {"error": {"message": "Incorrect API key"}}), AuthError),
        (DummyHTTPResponse(400, {"error": {"message": "Blocked by our safety system"}}), PolicyViolation),
        (DummyHTTPResponse(429, {"error": {"message": "Rate limit"}}, headers={"retry-after": "3"}), RateLimited),
        (DummyHTTPResponse(502, None, text="<html>bad gateway</html>"), ProviderUnavailable),
        (DummyHTTPResponse(200, None, text="not json"), ProviderUnavailable),
    ],
)
async def test_submit_error_classification(monkeypatch, adapter, response, expected):
    _install(monkeypatch, [response])

    with pytest.raises(expected) as excinfo:
        await adapter.submit({"prompt": "a boat"})

    assert excinfo.value.provider == "sora"
    if expected is RateLimited:
        assert excinfo.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_transport_failure_is_transient(monkeypatch, adapter):
    _install(monkeypatch, [httpx.ConnectError("connection refused")])

    with pytest.raises(ProviderUnavailable) as excinfo:
        await adapter.submit({"prompt": "a boat"})

    assert excinfo.value.code == "network_error"


@pytest.mark.asyncio
async def test_poll_status_states(monkeypatch, adapter):
    client = _install(
        monkeypatch,
        [
            DummyHTTPResponse(200, {"id": "video_abc", "status": "in_progress", "progress": 40}),
            DummyHTTPResponse(200, {"id": "video_abc", "status": "completed"}),
            DummyHTTPResponse(
                200,
                {"id": "video_abc", "status": "failed", "error": {"message": "moderation_blocked"}},
            ),
        ],
    )

    running = await adapter.poll_status("video_abc")
    done = await adapter.poll_status("video_abc")
    failed = await adapter.poll_status("video_abc")

    assert running.state is ProviderState.INTERMEDIATE
    assert done.state is ProviderState.COMPLETED
    assert done.result_url == "https://api.openai.test/v1/videos/video_abc/content"
    assert failed.state is ProviderState.FAILED
    assert failed.error == "moderation_blocked"
    assert client.requests[0]["url"] == "https://api.openai.test/v1/videos/video_abc"


@pytest.mark.asyncio
async def test_poll_prefers_explicit_video_url(monkeypatch, adapter):
    _install(
        monkeypatch,
        [DummyHTTPResponse(200, {"status": "completed", "video_url": "https://cdn.openai.test/v.mp4"})],
    )

    status = await adapter.poll_status("video_abc")

    assert status.result_url == "https://cdn.openai.test/v.mp4"


@pytest.mark.asyncio
async def test_unknown_status_is_transient(monkeypatch, adapter):
    _install(monkeypatch, [DummyHTTPResponse(200, {"status": "teleporting"})])

    with pytest.raises(ProviderUnavailable):
        await adapter.poll_status("video_abc")


def test_estimate_cost_per_second(adapter):
    assert adapter.estimate_cost({"prompt": "x", "seconds": 8}) == pytest.approx(0.8)
    assert adapter.estimate_cost({"prompt": "x", "seconds": 12, "model": "sora-2-pro"}) == pytest.approx(2.4)


@pytest.mark.asyncio
async def test_validate_credentials(monkeypatch, adapter):
    _install(
        monkeypatch,
        [DummyHTTPResponse(200, {"data": []}), httpx.ConnectError("down")],
    )

    assert await adapter.validate_credentials() is True
    assert await adapter.validate_credentials() is False


def test_download_headers_carry_bearer_token(adapter):
    assert adapter.download_headers() == {"Authorization": "Bearer sk-test"}
