"""Result storage for rendered videos."""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

from ..errors import TransferError


logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class StorageUploader(ABC):
    """Accepts raw bytes and returns a durable URL."""

    @abstractmethod
    async def upload(self, data: bytes, *, filename: str, content_type: str) -> str:
        """Persist ``data`` and return its public URL."""


class LocalStorageUploader(StorageUploader):
    """Write uploads below ``root`` and expose them under ``public_base_url``."""

    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    async def upload(self, data: bytes, *, filename: str, content_type: str) -> str:
        name = _SAFE_NAME.sub("_", filename).strip("._") or "upload.bin"
        target = self.root / name
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise TransferError(f"failed to store {name}: {exc}") from exc
        logger.info(
            "storage.upload.completed",
            extra={"file_name": name, "content_type": content_type, "size_bytes": len(data)},
        )
        return f"{self.public_base_url}/{name}"

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)


__all__ = ["LocalStorageUploader", "StorageUploader"]
