"""Helpers shared by the httpx-based adapters for boundary validation."""

from __future__ import annotations

from typing import Any

import httpx

from ..errors import (
    ProviderUnavailable,
    VideoJobError,
    classify_exception,
    classify_http_error,
    parse_retry_after,
)


def _header(response: Any, name: str) -> str | None:
    headers = getattr(response, "headers", None) or {}
    return headers.get(name) or headers.get(name.title())


def extract_error_message(response: Any) -> str:
    """Best-effort error text from a failed provider response."""

    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    text = getattr(response, "text", "") or ""
    return text.strip() or f"HTTP {response.status_code}"


def decode_json(response: Any, *, provider: str) -> dict[str, Any]:
    """Return the JSON object of a successful response or raise a classified error."""

    if not 200 <= response.status_code < 300:
        raise classify_http_error(
            response.status_code,
            extract_error_message(response),
            provider=provider,
            retry_after=parse_retry_after(_header(response, "retry-after")),
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderUnavailable(
            f"{provider} returned a response that is not JSON", provider=provider
        ) from exc
    if not isinstance(body, dict):
        raise ProviderUnavailable(
            f"{provider} returned an unexpected JSON document", provider=provider
        )
    return body


def transport_error(exc: httpx.HTTPError, *, provider: str) -> VideoJobError:
    """Classify a transport-level httpx failure."""

    return classify_exception(exc, provider=provider)


__all__ = ["decode_json", "extract_error_message", "transport_error"]
