"""Base interfaces for video rendering provider adapters.

Adapters hide the wire format of one external rendering service. They are
expected to:

* validate the opaque job payload before any network call and raise
  :class:`~src.videojobs.errors.InvalidRequest` for unsupported values;
* classify every provider failure into the shared error taxonomy at the
  boundary, including malformed responses which become
  :class:`~src.videojobs.errors.ProviderUnavailable`;
* never retry internally. Backoff belongs to the retry policy and the
  status poller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from ..domain.models import ProviderId


class ProviderState(str, Enum):
    INTERMEDIATE = "intermediate"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProviderStatus:
    """Tagged result of a single status poll.

    Build instances through :meth:`intermediate`, :meth:`completed` or
    :meth:`failed` so each state carries only the fields it owns.
    """

    state: ProviderState
    result_url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None
    raw_status: str | None = None

    @classmethod
    def intermediate(cls, raw_status: str | None = None) -> "ProviderStatus":
        return cls(ProviderState.INTERMEDIATE, raw_status=raw_status)

    @classmethod
    def completed(
        cls,
        result_url: str | None,
        *,
        thumbnail_url: str | None = None,
        raw_status: str | None = None,
    ) -> "ProviderStatus":
        return cls(
            ProviderState.COMPLETED,
            result_url=result_url,
            thumbnail_url=thumbnail_url,
            raw_status=raw_status,
        )

    @classmethod
    def failed(cls, error: str, *, raw_status: str | None = None) -> "ProviderStatus":
        return cls(ProviderState.FAILED, error=error, raw_status=raw_status)


class ProviderAdapter(ABC):
    """Abstract adapter over one rendering service."""

    provider_id: ProviderId

    @abstractmethod
    async def submit(self, payload: Mapping[str, Any]) -> str:
        """Submit a generation request and return the provider job id."""

    @abstractmethod
    async def poll_status(self, provider_job_id: str) -> ProviderStatus:
        """Read the provider-side state of ``provider_job_id``; safe to repeat."""

    @abstractmethod
    def estimate_cost(self, payload: Mapping[str, Any]) -> float:
        """Return the estimated price in USD for ``payload`` without any I/O."""

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Return whether the configured credentials are accepted."""

    def download_headers(self) -> Mapping[str, str]:
        """Headers required to fetch a rendered asset from the provider."""

        return {}


__all__ = ["ProviderAdapter", "ProviderState", "ProviderStatus"]
