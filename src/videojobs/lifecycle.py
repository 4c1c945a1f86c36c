"""Lifecycle helpers wiring background queue maintenance."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Iterable

from .domain.models import JobStatus
from .services.job_queue import TERMINAL_STATUSES, JobQueue


logger = logging.getLogger(__name__)


def queue_cleanup_once(
    *,
    queue: JobQueue,
    older_than: timedelta,
    statuses: Iterable[JobStatus] = TERMINAL_STATUSES,
    limit: int = 100,
) -> list[str]:
    """Run a single cleanup iteration and return evicted job ids."""

    removed = queue.apply_retention()
    removed += queue.clean(older_than, statuses, limit=limit)
    return removed


async def run_periodic_queue_cleanup(
    *,
    queue: JobQueue,
    shutdown_event: asyncio.Event,
    interval_seconds: float = 900.0,
    older_than: timedelta = timedelta(hours=24),
    limit: int = 100,
) -> None:
    """Execute queue cleanup until ``shutdown_event`` is signalled."""

    interval = max(1.0, float(interval_seconds))
    while not shutdown_event.is_set():
        try:
            removed = await asyncio.to_thread(
                queue_cleanup_once,
                queue=queue,
                older_than=older_than,
                limit=limit,
            )
        except Exception:
            logger.exception("Queue cleanup iteration failed")
        else:
            if removed:
                logger.info("Evicted %s terminal jobs during cleanup", len(removed))
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


__all__ = [
    "queue_cleanup_once",
    "run_periodic_queue_cleanup",
]
