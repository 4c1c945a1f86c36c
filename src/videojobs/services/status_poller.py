"""Bounded provider polling state machine.

``SUBMITTED -> POLLING -> {COMPLETED, FAILED, TIMED_OUT}``

The first poll happens immediately after submission, so a provider that
reports completion on the first poll finishes without any sleep. The poller
sleeps only between intermediate results and never after the last attempt.
A rate-limited poll waits for the provider's ``Retry-After`` hint when it is
longer than the poll interval, up to ``max_retry_after_seconds``.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from ..clock import Clock, SystemClock
from ..errors import VideoJobError
from ..providers.base import ProviderAdapter, ProviderState


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Awaitable[Any] | Any]


class PollState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class PollOutcome:
    """Terminal result of :meth:`StatusPoller.run`."""

    state: PollState
    provider_job_id: str
    attempts: int
    result_url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None
    last_error: VideoJobError | None = None
    transitions: list[PollState] = field(default_factory=list)


class StatusPoller:
    """Drive one provider job to a terminal poll state."""

    def __init__(
        self,
        *,
        poll_interval_seconds: float = 5.0,
        max_attempts: int = 120,
        progress_cap: float = 0.9,
        max_retry_after_seconds: float = 60.0,
        clock: Clock | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= progress_cap < 1.0:
            raise ValueError("progress_cap must be within [0, 1)")
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self.progress_cap = progress_cap
        self.max_retry_after_seconds = max(poll_interval_seconds, max_retry_after_seconds)
        self._clock = clock or SystemClock()

    @property
    def max_wait_seconds(self) -> float:
        return self.poll_interval_seconds * self.max_attempts

    def progress_for(self, attempt: int) -> float:
        return min(attempt / self.max_attempts, self.progress_cap)

    async def run(
        self,
        adapter: ProviderAdapter,
        provider_job_id: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> PollOutcome:
        outcome = PollOutcome(
            state=PollState.SUBMITTED,
            provider_job_id=provider_job_id,
            attempts=0,
            transitions=[PollState.SUBMITTED],
        )
        self._transition(outcome, PollState.POLLING)

        for attempt in range(1, self.max_attempts + 1):
            outcome.attempts = attempt
            delay = self.poll_interval_seconds
            try:
                status = await adapter.poll_status(provider_job_id)
            except VideoJobError as exc:
                if not exc.retryable:
                    raise
                outcome.last_error = exc
                delay = self._delay_after(exc)
                logger.warning(
                    "poller.poll_error",
                    extra={
                        "provider_job_id": provider_job_id,
                        "attempt": attempt,
                        "error_kind": exc.kind.value,
                    },
                )
            else:
                if status.state is ProviderState.COMPLETED:
                    if status.result_url:
                        outcome.result_url = status.result_url
                        outcome.thumbnail_url = status.thumbnail_url
                        await self._report(on_progress, 1.0)
                        self._transition(outcome, PollState.COMPLETED)
                        return outcome
                    logger.warning(
                        "poller.completed_without_url",
                        extra={"provider_job_id": provider_job_id, "attempt": attempt},
                    )
                elif status.state is ProviderState.FAILED:
                    outcome.error = status.error
                    self._transition(outcome, PollState.FAILED)
                    return outcome

            await self._report(on_progress, self.progress_for(attempt))
            if attempt < self.max_attempts:
                await self._clock.sleep(delay)

        self._transition(outcome, PollState.TIMED_OUT)
        return outcome

    def _delay_after(self, error: VideoJobError) -> float:
        if error.retry_after is None:
            return self.poll_interval_seconds
        return min(max(self.poll_interval_seconds, error.retry_after), self.max_retry_after_seconds)

    def _transition(self, outcome: PollOutcome, state: PollState) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        logger.debug(
            "poller.transition",
            extra={"provider_job_id": outcome.provider_job_id, "state": state.value},
        )

    @staticmethod
    async def _report(callback: ProgressCallback | None, progress: float) -> None:
        if callback is None:
            return
        result = callback(progress)
        if inspect.isawaitable(result):
            await result


__all__ = ["PollOutcome", "PollState", "StatusPoller"]
