"""Sora provider adapter backed by the OpenAI videos API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from ..domain.models import ProviderId
from ..errors import InvalidRequest, ProviderUnavailable, VideoJobError
from .base import ProviderAdapter, ProviderStatus
from .responses import decode_json, transport_error

logger = logging.getLogger(__name__)

SORA_PRICE_PER_SECOND = {"sora-2": 0.10, "sora-2-pro": 0.20}
SORA_SIZES = ("1280x720", "720x1280", "1792x1024", "1024x1792")
SORA_SECONDS = (4, 8, 12)

_INTERMEDIATE = frozenset({"queued", "pending", "in_progress", "processing"})


@dataclass(slots=True)
class SoraAdapter(ProviderAdapter):
    """Submit and poll Sora renders."""

    api_key: str
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 30.0
    default_model: str = "sora-2"
    default_size: str = "1280x720"
    log: logging.Logger = field(default_factory=lambda: logger)

    provider_id = ProviderId.SORA

    async def submit(self, payload: Mapping[str, Any]) -> str:
        request = self.build_request(payload)
        response = await self._send("POST", "/videos", json=request)
        body = decode_json(response, provider=self.provider_id.value)
        video_id = body.get("id")
        if not isinstance(video_id, str) or not video_id:
            raise ProviderUnavailable("Sora response missing video id", provider=self.provider_id.value)
        self.log.info(
            "sora.video.created",
            extra={"provider_job_id": video_id, "model": request["model"], "seconds": request["seconds"]},
        )
        return video_id

    async def poll_status(self, provider_job_id: str) -> ProviderStatus:
        response = await self._send("GET", f"/videos/{provider_job_id}")
        body = decode_json(response, provider=self.provider_id.value)
        status = body.get("status")
        if not isinstance(status, str):
            raise ProviderUnavailable("Sora status response missing status", provider=self.provider_id.value)
        if status in _INTERMEDIATE:
            return ProviderStatus.intermediate(status)
        if status == "completed":
            output = body.get("output") if isinstance(body.get("output"), dict) else {}
            result_url = (
                body.get("video_url")
                or output.get("url")
                or f"{self.base_url.rstrip('/')}/videos/{provider_job_id}/content"
            )
            return ProviderStatus.completed(
                result_url,
                thumbnail_url=body.get("thumbnail_url"),
                raw_status=status,
            )
        if status == "failed":
            error = body.get("error")
            if isinstance(error, dict):
                message = error.get("message") or error.get("code")
            else:
                message = error
            return ProviderStatus.failed(str(message or "Sora generation failed"), raw_status=status)
        raise ProviderUnavailable(
            f"Sora returned unknown status '{status}'", provider=self.provider_id.value
        )

    def estimate_cost(self, payload: Mapping[str, Any]) -> float:
        request = self.build_request(payload)
        return SORA_PRICE_PER_SECOND[request["model"]] * int(request["seconds"])

    async def validate_credentials(self) -> bool:
        try:
            response = await self._send("GET", "/models")
        except VideoJobError:
            self.log.warning("sora.credentials.unreachable")
            return False
        return response.status_code == 200

    def download_headers(self) -> Mapping[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def build_request(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Validate ``payload`` and translate it into a create-video request."""

        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequest("Sora prompt is required", provider=self.provider_id.value, code="invalid_prompt")
        model = payload.get("model") or self.default_model
        if model not in SORA_PRICE_PER_SECOND:
            raise InvalidRequest(f"Unsupported Sora model '{model}'", provider=self.provider_id.value)
        size = payload.get("size") or self.default_size
        if size not in SORA_SIZES:
            raise InvalidRequest(
                f"Unsupported Sora size '{size}'", provider=self.provider_id.value, code="unsupported_resolution"
            )
        raw_seconds = payload.get("seconds", payload.get("duration", SORA_SECONDS[0]))
        try:
            seconds = int(raw_seconds)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(
                f"Invalid Sora duration '{raw_seconds}'", provider=self.provider_id.value, code="unsupported_duration"
            ) from exc
        if seconds not in SORA_SECONDS:
            raise InvalidRequest(
                f"Sora duration must be one of {SORA_SECONDS}", provider=self.provider_id.value, code="unsupported_duration"
            )
        return {"model": model, "prompt": prompt.strip(), "seconds": str(seconds), "size": size}

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                if method == "POST":
                    return await client.post(url, headers=headers, **kwargs)
                return await client.get(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise transport_error(exc, provider=self.provider_id.value) from exc


__all__ = ["SORA_PRICE_PER_SECOND", "SORA_SECONDS", "SORA_SIZES", "SoraAdapter"]
