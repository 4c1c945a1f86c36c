"""Retry eligibility and exponential backoff."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from ..errors import VideoJobError


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Outcome of :meth:`RetryPolicy.decide`."""

    retry: bool
    delay_seconds: float
    reason: str


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Pure backoff policy owned by the job queue.

    ``attempts`` always counts the execution attempts already made, so the
    first retry (after attempt 1) waits ``base * 2**0`` plus jitter and the
    Nth retry waits at least ``base * 2**(N-1)``. Delays never exceed
    ``cap_delay_seconds``.
    """

    base_delay_seconds: float = 2.0
    cap_delay_seconds: float = 30.0
    jitter_seconds: float = 1.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0 or self.jitter_seconds < 0:
            raise ValueError("backoff parameters must not be negative")
        if self.cap_delay_seconds < self.base_delay_seconds:
            raise ValueError("cap_delay_seconds must be >= base_delay_seconds")

    def backoff_delay(self, attempts: int, *, base_delay_seconds: float | None = None) -> float:
        base = self.base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        exponent = max(0, attempts - 1)
        jitter = self.rng.uniform(0.0, self.jitter_seconds) if self.jitter_seconds else 0.0
        return min(base * (2**exponent) + jitter, self.cap_delay_seconds)

    def decide(
        self,
        error: VideoJobError,
        *,
        attempts: int,
        max_attempts: int,
        base_delay_seconds: float | None = None,
    ) -> RetryDecision:
        if not error.retryable:
            return RetryDecision(False, 0.0, f"non-retryable {error.kind.value} error")
        if attempts >= max_attempts:
            return RetryDecision(False, 0.0, f"attempts exhausted ({attempts}/{max_attempts})")
        delay = self.backoff_delay(attempts, base_delay_seconds=base_delay_seconds)
        if error.retry_after is not None:
            delay = min(max(delay, error.retry_after), self.cap_delay_seconds)
        return RetryDecision(True, delay, f"retryable {error.kind.value} error")


__all__ = ["RetryDecision", "RetryPolicy"]
