"""Worker health check."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..clock import Clock, SystemClock
from .job_queue import JobQueue


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HealthReport:
    healthy: bool
    queue_reachable: bool
    active_worker_count: int
    latency_ms: float
    timestamp: datetime
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "healthy": self.healthy,
            "queueReachable": self.queue_reachable,
            "activeWorkerCount": self.active_worker_count,
            "latencyMs": round(self.latency_ms, 2),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class HealthService:
    """Report queue reachability and the number of live workers.

    The deployment is healthy when the queue answers a ping and at least one
    worker wrote a heartbeat inside ``heartbeat_window``.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        heartbeat_window: timedelta = timedelta(seconds=60),
        clock: Clock | None = None,
    ) -> None:
        self._queue = queue
        self._window = heartbeat_window
        self._clock = clock or SystemClock()

    def check(self) -> HealthReport:
        started = time.perf_counter()
        try:
            self._queue.ping()
            workers = self._queue.active_workers(self._window)
        except Exception as exc:
            logger.warning("health.queue_unreachable", extra={"error": str(exc)})
            return HealthReport(
                healthy=False,
                queue_reachable=False,
                active_worker_count=0,
                latency_ms=(time.perf_counter() - started) * 1000,
                timestamp=self._clock.now(),
                error=str(exc),
            )
        return HealthReport(
            healthy=workers > 0,
            queue_reachable=True,
            active_worker_count=workers,
            latency_ms=(time.perf_counter() - started) * 1000,
            timestamp=self._clock.now(),
        )


__all__ = ["HealthReport", "HealthService"]
