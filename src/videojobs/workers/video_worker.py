"""Bounded-concurrency worker executing video generation jobs."""

from __future__ import annotations

import asyncio
import os
import socket
from collections.abc import Callable, Mapping
from typing import Any, TypeVar
from uuid import uuid4

import structlog

from ..clock import Clock, SystemClock
from ..domain.models import Job, ProviderId
from ..errors import (
    InvalidJobStateError,
    InvalidRequest,
    PollTimeout,
    ProviderUnavailable,
    TransferError,
    VideoJobError,
    classify_exception,
    provider_failure,
)
from ..infrastructure.downloads import AssetDownloader
from ..infrastructure.storage import StorageUploader
from ..providers.base import ProviderAdapter
from ..services.job_queue import JobQueue
from ..services.status_poller import PollState, StatusPoller


T = TypeVar("T")

RESULT_CONTENT_TYPE = "video/mp4"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"


class VideoGenerationWorker:
    """Pull jobs from :class:`JobQueue` and run submit, poll, download, upload, finalize.

    A single dispatcher loop claims jobs while a shared semaphore bounds the
    number of in-flight attempts to ``concurrency``. Job starts are rate
    limited by the queue itself. Every failure is classified and reported to
    the queue, which consults the retry policy. The heartbeat keeps the
    worker's claims leased.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        providers: Mapping[ProviderId, ProviderAdapter],
        poller: StatusPoller,
        storage: StorageUploader,
        downloader: AssetDownloader,
        clock: Clock | None = None,
        concurrency: int = 2,
        worker_id: str | None = None,
        shutdown_timeout_seconds: float = 30.0,
        idle_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 10.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.poller = poller
        self._providers = dict(providers)
        self._storage = storage
        self._downloader = downloader
        self._clock = clock or SystemClock()
        self.concurrency = concurrency
        self.worker_id = worker_id or default_worker_id()
        self.shutdown_timeout_seconds = max(0.0, shutdown_timeout_seconds)
        self.idle_interval_seconds = idle_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._slots = asyncio.Semaphore(concurrency)
        self._in_flight: dict[asyncio.Task[None], Job] = {}
        self._log = structlog.get_logger(__name__).bind(worker_id=self.worker_id)

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    @staticmethod
    async def _run_sync(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Execute ``func`` in a worker thread to avoid blocking the event loop."""

        return await asyncio.to_thread(func, *args, **kwargs)

    # ------------------------------------------------------------------
    # High-level control flow
    # ------------------------------------------------------------------
    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        """Claim and execute jobs until ``shutdown_event`` is set, then drain."""

        self._log.info("worker.started", concurrency=self.concurrency)
        heartbeat = asyncio.create_task(self._heartbeat_loop(shutdown_event), name="worker-heartbeat")
        try:
            while not shutdown_event.is_set():
                if not await self._acquire_slot(shutdown_event):
                    break
                try:
                    job = await self._next_job(shutdown_event)
                except BaseException:
                    self._slots.release()
                    raise
                if job is None:
                    self._slots.release()
                    continue
                self._start(job)
        finally:
            await self._drain()
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._log.info("worker.stopped")

    async def run_once(self) -> bool:
        """Claim at most one job and execute it inline."""

        job = await self._run_sync(self.queue.claim_next, self.worker_id)
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: Job) -> None:
        """Execute one attempt of ``job``; outcomes are always reported to the queue."""

        provider = job.provider.value
        log = self._log.bind(job_id=job.id, provider=provider, attempt=job.attempts)
        log.info("worker.job.started")

        async def _on_progress(value: float) -> None:
            nonlocal job
            job = await self._run_sync(self.queue.update_progress, job, value)

        try:
            adapter = self._providers.get(job.provider)
            if adapter is None:
                raise InvalidRequest(f"no adapter configured for provider '{provider}'", provider=provider)

            provider_job_id = await adapter.submit(job.payload)
            job = await self._run_sync(self.queue.record_submission, job, provider_job_id)
            log = log.bind(provider_job_id=provider_job_id)
            log.info("worker.job.submitted")

            outcome = await self.poller.run(adapter, provider_job_id, on_progress=_on_progress)
            if outcome.state is PollState.TIMED_OUT:
                message = f"provider job {provider_job_id} still running after {outcome.attempts} polls"
                if outcome.last_error is not None:
                    message = f"{message}; last error: {outcome.last_error.message}"
                raise PollTimeout(message, provider=provider)
            if outcome.state is PollState.FAILED:
                raise provider_failure(outcome.error or "provider reported a failure", provider=provider)

            data = await self._downloader.fetch(outcome.result_url, headers=adapter.download_headers())
            result_url = await self._upload(job, data)
            job = await self._run_sync(
                self.queue.complete,
                job,
                result_url=result_url,
                thumbnail_url=outcome.thumbnail_url,
            )
            log.info("worker.job.completed", result_url=result_url, polls=outcome.attempts)
        except asyncio.CancelledError:
            log.warning("worker.job.interrupted")
            await self._report_failure(
                job,
                ProviderUnavailable("attempt interrupted by worker shutdown", provider=provider),
                log,
            )
            raise
        except Exception as exc:
            await self._report_failure(job, classify_exception(exc, provider=provider), log)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _upload(self, job: Job, data: bytes) -> str:
        try:
            return await self._storage.upload(
                data,
                filename=f"{job.id}.mp4",
                content_type=RESULT_CONTENT_TYPE,
            )
        except VideoJobError:
            raise
        except Exception as exc:
            raise TransferError(f"upload of {job.id}.mp4 failed: {exc}", provider=job.provider.value) from exc

    async def _report_failure(self, job: Job, error: VideoJobError, log: Any) -> None:
        try:
            decision = await self._run_sync(self.queue.fail, job, error)
        except InvalidJobStateError as exc:
            log.warning("worker.job.claim_lost", error=error.message, reason=str(exc))
            return
        log.warning(
            "worker.job.failed",
            error_kind=error.kind.value,
            error_code=error.code,
            error=error.message,
            retryable=error.retryable,
            will_retry=decision.retry,
            delay_seconds=decision.delay_seconds,
        )

    async def _next_job(self, shutdown_event: asyncio.Event) -> Job | None:
        return await self.queue.dequeue_next(
            self.worker_id,
            shutdown_event=shutdown_event,
            idle_interval_seconds=self.idle_interval_seconds,
        )

    async def _acquire_slot(self, shutdown_event: asyncio.Event) -> bool:
        if not self._slots.locked():
            await self._slots.acquire()
            return True
        acquire = asyncio.ensure_future(self._slots.acquire())
        stop = asyncio.ensure_future(shutdown_event.wait())
        try:
            done, _ = await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if acquire in done:
            return True
        acquire.cancel()
        try:
            await acquire
        except asyncio.CancelledError:
            return False
        self._slots.release()
        return False

    async def _heartbeat_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self._run_sync(self.queue.heartbeat, self.worker_id)
            except Exception:
                self._log.exception("worker.heartbeat.failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.heartbeat_interval_seconds)
            except asyncio.TimeoutError:
                continue

    def _start(self, job: Job) -> None:
        task = asyncio.create_task(self._execute(job), name=f"video-job-{job.id}")
        self._in_flight[task] = job
        task.add_done_callback(self._on_task_done)

    async def _execute(self, job: Job) -> None:
        try:
            await self.process_job(job)
        finally:
            self._slots.release()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        job = self._in_flight.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error(
                "worker.job.crashed",
                job_id=job.id if job is not None else None,
                exc_info=exc,
            )

    async def _drain(self) -> None:
        if not self._in_flight:
            return
        tasks = set(self._in_flight)
        self._log.info("worker.draining", in_flight=len(tasks), timeout=self.shutdown_timeout_seconds)
        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout_seconds or None)
        if not pending:
            return
        self._log.warning("worker.drain.timeout", interrupted=len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["RESULT_CONTENT_TYPE", "VideoGenerationWorker", "default_worker_id"]
