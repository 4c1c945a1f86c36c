"""Veo provider adapter backed by Vertex AI long-running predictions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from ..domain.models import ProviderId
from ..errors import InvalidRequest, ProviderUnavailable, VideoJobError
from .base import ProviderAdapter, ProviderStatus
from .responses import decode_json, transport_error

logger = logging.getLogger(__name__)

VEO_MODELS = ("veo-3.1-generate-preview", "veo-3.1-fast-generate-preview")
VEO_RESOLUTIONS = ("720p", "1080p")
VEO_DURATIONS = (4, 6, 8)
VEO_PRICE_PER_TEN_SECONDS = 0.15

_PROMPT_LABELS = re.compile(r"\b(Style|Subject|Action|Camera|Lighting|Palette|Sound):", re.IGNORECASE)
_DURATION_SENTENCE = re.compile(r"Duration:.*?seconds\.", re.IGNORECASE)


def adapt_prompt_for_veo(prompt: str) -> str:
    """Strip structured prompt labels that Veo does not understand."""

    cleaned = _DURATION_SENTENCE.sub("", prompt)
    cleaned = _PROMPT_LABELS.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r"\.+", ". ", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def nearest_veo_duration(seconds: float) -> int:
    """Map a requested length onto the closest supported one; ties pick the longer clip."""

    return min(VEO_DURATIONS, key=lambda supported: (abs(supported - seconds), -supported))


def _public_uri(uri: str) -> str:
    if uri.startswith("gs://"):
        return "https://storage.googleapis.com/" + uri[len("gs://"):]
    return uri


@dataclass(slots=True)
class VeoAdapter(ProviderAdapter):
    """Submit and poll Veo renders as Vertex AI operations."""

    api_key: str
    project_id: str
    location: str = "us-central1"
    timeout_seconds: float = 30.0
    default_model: str = "veo-3.1-generate-preview"
    default_resolution: str = "720p"
    fps: int = 24
    log: logging.Logger = field(default_factory=lambda: logger)

    provider_id = ProviderId.VEO

    @property
    def base_url(self) -> str:
        return f"https://{self.location}-aiplatform.googleapis.com/v1"

    async def submit(self, payload: Mapping[str, Any]) -> str:
        request, model = self.build_request(payload)
        path = (
            f"/projects/{self.project_id}/locations/{self.location}"
            f"/publishers/google/models/{model}:predictLongRunning"
        )
        response = await self._send("POST", path, json=request)
        body = decode_json(response, provider=self.provider_id.value)
        operation = body.get("name")
        if not isinstance(operation, str) or not operation:
            raise ProviderUnavailable("Veo response missing operation name", provider=self.provider_id.value)
        self.log.info(
            "veo.operation.created",
            extra={"provider_job_id": operation, "model": model},
        )
        return operation

    async def poll_status(self, provider_job_id: str) -> ProviderStatus:
        response = await self._send("GET", f"/{provider_job_id.lstrip('/')}")
        body = decode_json(response, provider=self.provider_id.value)
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ProviderStatus.failed(message or "Veo generation failed", raw_status="error")
        done = body.get("done", False)
        if not isinstance(done, bool):
            raise ProviderUnavailable("Veo operation has a malformed 'done' flag", provider=self.provider_id.value)
        if not done:
            return ProviderStatus.intermediate("running")
        return ProviderStatus.completed(self._video_uri(body.get("response")), raw_status="done")

    def estimate_cost(self, payload: Mapping[str, Any]) -> float:
        request, _ = self.build_request(payload)
        return (request["parameters"]["durationSeconds"] / 10) * VEO_PRICE_PER_TEN_SECONDS

    async def validate_credentials(self) -> bool:
        path = f"/projects/{self.project_id}/locations/{self.location}/publishers/google/models/{self.default_model}"
        try:
            response = await self._send("GET", path)
        except VideoJobError:
            self.log.warning("veo.credentials.unreachable")
            return False
        return response.status_code == 200

    def download_headers(self) -> Mapping[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def build_request(self, payload: Mapping[str, Any]) -> tuple[dict[str, Any], str]:
        """Validate ``payload`` and return the prediction request plus model name."""

        provider = self.provider_id.value
        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequest("Veo prompt is required", provider=provider, code="invalid_prompt")
        model = payload.get("model") or self.default_model
        if model not in VEO_MODELS:
            raise InvalidRequest(f"Unsupported Veo model '{model}'", provider=provider)
        resolution = payload.get("resolution") or self.default_resolution
        if resolution not in VEO_RESOLUTIONS:
            raise InvalidRequest(
                f"Unsupported Veo resolution '{resolution}'", provider=provider, code="unsupported_resolution"
            )
        raw_duration = payload.get("duration", VEO_DURATIONS[-1])
        try:
            requested = float(raw_duration)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(
                f"Invalid Veo duration '{raw_duration}'", provider=provider, code="unsupported_duration"
            ) from exc
        if requested <= 0:
            raise InvalidRequest(
                f"Veo duration must be positive, got {raw_duration}",
                provider=provider,
                code="unsupported_duration",
            )
        duration = nearest_veo_duration(requested)
        request = {
            "instances": [{"prompt": adapt_prompt_for_veo(prompt)}],
            "parameters": {
                "durationSeconds": duration,
                "resolution": resolution,
                "fps": self.fps,
                "sampleCount": 1,
            },
        }
        return request, model

    @staticmethod
    def _video_uri(response: Any) -> str | None:
        if not isinstance(response, dict):
            return None
        for video in response.get("videos") or []:
            if isinstance(video, dict):
                uri = video.get("gcsUri") or video.get("uri") or video.get("url")
                if uri:
                    return _public_uri(uri)
        for sample in response.get("generatedSamples") or []:
            video = sample.get("video") if isinstance(sample, dict) else None
            if isinstance(video, dict) and video.get("uri"):
                return _public_uri(video["uri"])
        return None

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                if method == "POST":
                    return await client.post(url, headers=headers, **kwargs)
                return await client.get(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise transport_error(exc, provider=self.provider_id.value) from exc


__all__ = [
    "VEO_DURATIONS",
    "VEO_MODELS",
    "VEO_RESOLUTIONS",
    "VeoAdapter",
    "adapt_prompt_for_veo",
    "nearest_veo_duration",
]
