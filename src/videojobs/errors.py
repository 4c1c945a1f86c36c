"""Error taxonomy shared by provider adapters, the worker and the queue.

Provider failures are classified at the adapter boundary into a single
:class:`VideoJobError` type carrying ``kind``, ``retryable``, ``message`` and
``provider``. The queue consults the retry policy with that classification
exactly once per failed attempt.
"""

from __future__ import annotations

import asyncio
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum

import httpx

__all__ = [
    "AuthError",
    "ErrorKind",
    "InvalidJobStateError",
    "InvalidRequest",
    "JobNotFoundError",
    "PolicyViolation",
    "PollTimeout",
    "ProviderJobFailed",
    "ProviderUnavailable",
    "QueueError",
    "QueueUnavailableError",
    "RateLimited",
    "RetriesExhaustedError",
    "TransferError",
    "VideoJobError",
    "classify_exception",
    "classify_http_error",
    "parse_retry_after",
    "provider_failure",
]


class ErrorKind(str, Enum):
    """Failure categories used for retry decisions and diagnostics."""

    VALIDATION = "validation"
    AUTH = "auth"
    POLICY = "policy"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    TRANSFER = "transfer"
    UNKNOWN = "unknown"


class VideoJobError(Exception):
    """Uniform classified error raised across the orchestration core."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    default_code: str = "unknown_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        code: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.code = code or self.default_code
        self.status_code = status_code
        self.retry_after = retry_after
        if retryable is not None:
            self.retryable = retryable

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, code={self.code!r}, "
            f"retryable={self.retryable!r}, provider={self.provider!r}, message={self.message!r})"
        )


class InvalidRequest(VideoJobError):
    """Malformed payload or unsupported parameters."""

    kind = ErrorKind.VALIDATION
    default_code = "invalid_request"


class AuthError(VideoJobError):
    """Invalid credentials, unverified organisation or exhausted billing."""

    kind = ErrorKind.AUTH
    default_code = "invalid_credentials"


class PolicyViolation(VideoJobError):
    """Content rejected by the provider's safety filters."""

    kind = ErrorKind.POLICY
    default_code = "content_policy_violation"


class RateLimited(VideoJobError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True
    default_code = "rate_limit_exceeded"


class ProviderUnavailable(VideoJobError):
    """Network failure, 5xx or a malformed provider response."""

    kind = ErrorKind.TRANSIENT
    retryable = True
    default_code = "service_unavailable"


class PollTimeout(VideoJobError):
    kind = ErrorKind.TIMEOUT
    retryable = True
    default_code = "generation_timeout"


class TransferError(VideoJobError):
    """Downloading the rendered asset or pushing it to storage failed."""

    kind = ErrorKind.TRANSFER
    retryable = True
    default_code = "transfer_failed"


class ProviderJobFailed(VideoJobError):
    """Provider reported an explicit generation failure."""

    kind = ErrorKind.UNKNOWN
    default_code = "generation_failed"


_POLICY_MARKERS = ("policy", "safety", "inappropriate", "blocked")


def _mentions(message: str, markers: tuple[str, ...]) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in markers)


def provider_failure(message: str, *, provider: str | None = None) -> VideoJobError:
    """Classify a provider-reported generation failure message."""

    if _mentions(message, _POLICY_MARKERS):
        return PolicyViolation(message, provider=provider)
    return ProviderJobFailed(message, provider=provider)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max(0.0, (moment - reference).total_seconds())


def classify_http_error(
    status_code: int,
    message: str,
    *,
    provider: str | None = None,
    retry_after: float | None = None,
) -> VideoJobError:
    """Map a non-success provider HTTP response onto the error taxonomy."""

    text = message or f"provider responded with HTTP {status_code}"
    common = {"provider": provider, "status_code": status_code}
    if status_code == 400:
        if _mentions(text, _POLICY_MARKERS):
            return PolicyViolation(text, **common)
        if _mentions(text, ("prompt",)):
            return InvalidRequest(text, code="invalid_prompt", **common)
        if _mentions(text, ("resolution",)):
            return InvalidRequest(text, code="unsupported_resolution", **common)
        if _mentions(text, ("duration", "seconds")):
            return InvalidRequest(text, code="unsupported_duration", **common)
        return InvalidRequest(text, **common)
    if status_code == 401:
        return AuthError(text, code="invalid_api_key", **common)
    if status_code == 402:
        return AuthError(text, code="insufficient_credits", **common)
    if status_code == 403:
        if _mentions(text, ("quota",)):
            return AuthError(text, code="insufficient_quota", **common)
        if _mentions(text, ("verif",)):
            return AuthError(text, code="organization_not_verified", **common)
        return AuthError(text, **common)
    if status_code == 404:
        return InvalidRequest(text, code="job_not_found", **common)
    if status_code == 408:
        return ProviderUnavailable(text, code="timeout", **common)
    if status_code == 429:
        return RateLimited(text, retry_after=retry_after, **common)
    if status_code == 503:
        return ProviderUnavailable(text, retry_after=retry_after, **common)
    if status_code == 504:
        return ProviderUnavailable(text, code="timeout", **common)
    if status_code >= 500:
        return ProviderUnavailable(text, code="internal_server_error", **common)
    return VideoJobError(text, **common)


def classify_exception(exc: BaseException, *, provider: str | None = None) -> VideoJobError:
    """Convert any exception raised during an attempt into a :class:`VideoJobError`."""

    if isinstance(exc, VideoJobError):
        if exc.provider is None and provider is not None:
            exc.provider = provider
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ProviderUnavailable(message, provider=provider, code="timeout")
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ProviderUnavailable(message, provider=provider, code="network_error")
    return VideoJobError(message, provider=provider)


class QueueError(Exception):
    """Base class for job queue failures."""


class QueueUnavailableError(QueueError):
    """Raised when the queue storage cannot be reached."""


class JobNotFoundError(QueueError):
    """Raised when an operation targets an unknown job id."""


class InvalidJobStateError(QueueError):
    """Raised when a transition is not allowed from the job's current status."""


class RetriesExhaustedError(InvalidJobStateError):
    """Raised by a manual retry when the job already used every attempt."""
