from __future__ import annotations

import pytest

from src.videojobs.errors import InvalidRequest, ProviderUnavailable
from src.videojobs.providers.base import ProviderState
from src.videojobs.providers.veo import VeoAdapter, adapt_prompt_for_veo

from tests.mocks.http import DummyAsyncClient, DummyHTTPResponse

pytestmark = pytest.mark.unit

OPERATION = "projects/demo/locations/us-central1/publishers/google/models/veo-3.1-generate-preview/operations/op-1"


@pytest.fixture
def adapter() -> VeoAdapter:
    return VeoAdapter(api_key="ya29.token", project_id="demo")


def _install(monkeypatch, responses) -> DummyAsyncClient:
    client = DummyAsyncClient(responses)
    monkeypatch.setattr("httpx.AsyncClient", client)
    return client


def test_adapt_prompt_strips_structured_labels():
    prompt = "Style: cinematic. Subject: a red fox. Duration: about 8 seconds. Camera: slow dolly."

    assert adapt_prompt_for_veo(prompt) == "cinematic. a red fox. slow dolly."


@pytest.mark.asyncio
async def test_submit_starts_long_running_prediction(monkeypatch, adapter):
    client = _install(monkeypatch, [DummyHTTPResponse(200, {"name": OPERATION})])

    operation = await adapter.submit({"prompt": "Subject: a red fox", "duration": 12, "resolution": "1080p"})

    assert operation == OPERATION
    request = client.requests[0]
    assert request["url"] == (
        "https://us-central1-aiplatform.googleapis.com/v1/projects/demo/locations/us-central1"
        "/publishers/google/models/veo-3.1-generate-preview:predictLongRunning"
    )
    assert request["json"] == {
        "instances": [{"prompt": "a red fox"}],
        "parameters": {"durationSeconds": 8, "resolution": "1080p", "fps": 24, "sampleCount": 1},
    }
    assert request["headers"]["Authorization"] == "Bearer ya29.token"


@pytest.mark.parametrize(
    "payload",
    [
        {"prompt": "  "},
        {"prompt": "fox", "duration": 0},
        {"prompt": "fox", "duration": "long"},
        {"prompt": "fox", "resolution": "4k"},
        {"prompt": "fox", "model": "veo-1"},
    ],
)
def test_build_request_rejects_bad_payloads(adapter, payload):
    with pytest.raises(InvalidRequest):
        adapter.build_request(payload)


@pytest.mark.parametrize(
    ("requested", "expected"),
    [(1, 4), (4, 4), (5, 6), (5.4, 6), (6, 6), (7, 8), (8, 8), (12, 8), ("6", 6)],
)
def test_build_request_rounds_duration_to_nearest_supported(adapter, requested, expected):
    request, _ = adapter.build_request({"prompt": "fox", "duration": requested})

    assert request["parameters"]["durationSeconds"] == expected


@pytest.mark.asyncio
async def test_poll_status_states(monkeypatch, adapter):
    client = _install(
        monkeypatch,
        [
            DummyHTTPResponse(200, {"name": OPERATION}),
            DummyHTTPResponse(200, {"name": OPERATION, "done": False}),
            DummyHTTPResponse(
                200,
                {
                    "name": OPERATION,
                    "done": True,
                    "response": {"videos": [{"gcsUri": "gs://bucket/fox.mp4"}]},
                },
            ),
            DummyHTTPResponse(200, {"name": OPERATION, "done": True, "error": {"message": "quota hit"}}),
        ],
    )

    pending = await adapter.poll_status(OPERATION)
    running = await adapter.poll_status(OPERATION)
    done = await adapter.poll_status(OPERATION)
    failed = await adapter.poll_status(OPERATION)

    assert pending.state is ProviderState.INTERMEDIATE
    assert running.state is ProviderState.INTERMEDIATE
    assert done.state is ProviderState.COMPLETED
    assert done.result_url == "https://storage.googleapis.com/bucket/fox.mp4"
    assert failed.state is ProviderState.FAILED
    assert failed.error == "quota hit"
    assert client.requests[0]["url"] == f"https://us-central1-aiplatform.googleapis.com/v1/{OPERATION}"


@pytest.mark.asyncio
async def test_done_without_video_reports_missing_url(monkeypatch, adapter):
    _install(monkeypatch, [DummyHTTPResponse(200, {"done": True, "response": {}})])

    status = await adapter.poll_status(OPERATION)

    assert status.state is ProviderState.COMPLETED
    assert status.result_url is None


@pytest.mark.asyncio
async def test_generated_samples_shape_is_supported(monkeypatch, adapter):
    _install(
        monkeypatch,
        [
            DummyHTTPResponse(
                200,
                {"done": True, "response": {"generatedSamples": [{"video": {"uri": "https://cdn.test/f.mp4"}}]}},
            )
        ],
    )

    status = await adapter.poll_status(OPERATION)

    assert status.result_url == "https://cdn.test/f.mp4"


@pytest.mark.asyncio
async def test_malformed_done_flag_is_transient(monkeypatch, adapter):
    _install(monkeypatch, [DummyHTTPResponse(200, {"done": "yes"})])

    with pytest.raises(ProviderUnavailable):
        await adapter.poll_status(OPERATION)


def test_estimate_cost_uses_capped_duration(adapter):
    assert adapter.estimate_cost({"prompt": "fox", "duration": 4}) == pytest.approx(0.06)
    assert adapter.estimate_cost({"prompt": "fox", "duration": 30}) == pytest.approx(0.12)
