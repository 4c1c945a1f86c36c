"""Time sources injected into the queue, poller, rate limiter and worker."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Minimal time abstraction: read the current instant and suspend."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by :func:`asyncio.sleep`."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class FakeClock:
    """Deterministic clock for tests.

    ``sleep`` advances virtual time immediately and yields control once so
    other coroutines get a chance to run. Every requested delay is recorded
    in :attr:`sleeps`.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current

    async def sleep(self, seconds: float) -> None:
        delay = max(0.0, seconds)
        self.sleeps.append(delay)
        self._current += timedelta(seconds=delay)
        await asyncio.sleep(0)


__all__ = ["Clock", "FakeClock", "SystemClock"]
