from __future__ import annotations

import asyncio

import pytest

from src.videojobs.clock import FakeClock
from src.videojobs.errors import AuthError, ProviderUnavailable
from src.videojobs.providers.base import ProviderStatus
from src.videojobs.services.status_poller import PollState, StatusPoller

from tests.mocks.providers import ScriptedProvider

pytestmark = pytest.mark.unit


def _poller(clock: FakeClock, *, max_attempts: int = 5) -> StatusPoller:
    return StatusPoller(poll_interval_seconds=5.0, max_attempts=max_attempts, clock=clock)


def test_immediate_completion_never_sleeps():
    clock = FakeClock()
    provider = ScriptedProvider(poll_script=[ProviderStatus.completed("https://cdn.test/a.mp4")])

    outcome = asyncio.run(_poller(clock).run(provider, "job-a"))

    assert outcome.state is PollState.COMPLETED
    assert outcome.result_url == "https://cdn.test/a.mp4"
    assert outcome.attempts == 1
    assert outcome.transitions == [PollState.SUBMITTED, PollState.POLLING, PollState.COMPLETED]
    assert clock.sleeps == []


def test_intermediate_results_sleep_between_polls_and_report_progress():
    clock = FakeClock()
    provider = ScriptedProvider(
        poll_script=[
            ProviderStatus.intermediate("queued"),
            ProviderStatus.intermediate("in_progress"),
            ProviderStatus.completed("https://cdn.test/b.mp4", thumbnail_url="https://cdn.test/b.jpg"),
        ]
    )
    reported: list[float] = []

    outcome = asyncio.run(_poller(clock).run(provider, "job-b", on_progress=reported.append))

    assert outcome.state is PollState.COMPLETED
    assert outcome.thumbnail_url == "https://cdn.test/b.jpg"
    assert clock.sleeps == [5.0, 5.0]
    assert reported == [0.2, 0.4, 1.0]


def test_progress_is_capped_below_completion():
    poller = StatusPoller(max_attempts=10, progress_cap=0.9)

    assert poller.progress_for(9) == 0.9
    assert poller.progress_for(10) == 0.9
    assert poller.max_wait_seconds == 50.0


def test_times_out_after_max_attempts_without_trailing_sleep():
    clock = FakeClock()
    provider = ScriptedProvider(polls_until_complete=100)

    outcome = asyncio.run(_poller(clock, max_attempts=3).run(provider, "job-c"))

    assert outcome.state is PollState.TIMED_OUT
    assert outcome.attempts == 3
    assert clock.sleeps == [5.0, 5.0]
    assert [call for call in provider.calls if call[0] == "poll"] == [("poll", "job-c")] * 3


def test_provider_failure_is_terminal():
    clock = FakeClock()
    provider = ScriptedProvider(
        poll_script=[ProviderStatus.intermediate(), ProviderStatus.failed("render crashed")]
    )

    outcome = asyncio.run(_poller(clock).run(provider, "job-d"))

    assert outcome.state is PollState.FAILED
    assert outcome.error == "render crashed"
    assert outcome.attempts == 2


def test_transient_poll_errors_are_absorbed():
    clock = FakeClock()
    provider = ScriptedProvider(
        poll_script=[
            ProviderUnavailable("502 from provider"),
            ProviderStatus.completed("https://cdn.test/e.mp4"),
        ]
    )

    outcome = asyncio.run(_poller(clock).run(provider, "job-e"))

    assert outcome.state is PollState.COMPLETED
    assert isinstance(outcome.last_error, ProviderUnavailable)
    assert clock.sleeps == [5.0]


def test_non_retryable_poll_error_propagates():
    clock = FakeClock()
    provider = ScriptedProvider(poll_script=[AuthError("key revoked")])

    with pytest.raises(AuthError):
        asyncio.run(_poller(clock).run(provider, "job-f"))


def test_completed_without_url_keeps_polling():
    clock = FakeClock()
    provider = ScriptedProvider(
        poll_script=[
            ProviderStatus.completed(None),
            ProviderStatus.completed("https://cdn.test/g.mp4"),
        ]
    )

    outcome = asyncio.run(_poller(clock).run(provider, "job-g"))

    assert outcome.state is PollState.COMPLETED
    assert outcome.attempts == 2
    assert outcome.result_url == "https://cdn.test/g.mp4"


@pytest.mark.asyncio
async def test_async_progress_callback_is_awaited():
    clock = FakeClock()
    provider = ScriptedProvider(polls_until_complete=1)
    seen: list[float] = []

    async def on_progress(value: float) -> None:
        await asyncio.sleep(0)
        seen.append(value)

    await _poller(clock).run(provider, "sora-job-x", on_progress=on_progress)

    assert seen == [0.2, 1.0]
