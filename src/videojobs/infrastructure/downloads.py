"""Download rendered assets from provider URLs."""

from __future__ import annotations

import logging
from typing import Mapping

import httpx

from ..errors import TransferError


logger = logging.getLogger(__name__)


class AssetDownloader:
    """Fetch raw bytes over HTTP; every failure becomes a retryable :class:`TransferError`."""

    def __init__(self, *, timeout_seconds: float = 120.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def fetch(self, url: str, *, headers: Mapping[str, str] | None = None) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                response = await client.get(url, headers=dict(headers or {}))
        except httpx.HTTPError as exc:
            raise TransferError(f"download of {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise TransferError(
                f"download of {url} failed with status {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            raise TransferError(f"download of {url} returned an empty body")
        logger.info("download.completed", extra={"url": url, "size_bytes": len(response.content)})
        return response.content


__all__ = ["AssetDownloader"]
