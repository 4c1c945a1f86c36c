"""Service composition helpers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Mapping

from sqlalchemy.engine import Engine

from ..clock import Clock, SystemClock
from ..core.config import AppConfig
from ..db.db_init import build_session_factory, init_db
from ..domain.models import JobOptions, ProviderId, StartRateLimit
from ..infrastructure.downloads import AssetDownloader
from ..infrastructure.queue import QueueBackend, QueueBackendConfig, build_queue_backend
from ..infrastructure.storage import LocalStorageUploader, StorageUploader
from ..lifecycle import run_periodic_queue_cleanup
from ..providers.base import ProviderAdapter
from ..providers.factory import build_provider_registry
from ..repositories.job_repository import JobRepository, JobRepositorySink, SqlAlchemyJobRepository
from ..workers.video_worker import VideoGenerationWorker
from .health import HealthService
from .job_queue import JobQueue, RetentionLimits
from .retry_policy import RetryPolicy
from .status_poller import StatusPoller


logger = logging.getLogger(__name__)


@dataclass
class OrchestratorContext:
    """Explicitly constructed set of collaborators shared by API and workers.

    Nothing is created at import time; ``start`` attaches the repository
    mirror and ``aclose`` releases every connection.
    """

    config: AppConfig
    clock: Clock
    backend: QueueBackend
    queue: JobQueue
    repository: JobRepository
    providers: Mapping[ProviderId, ProviderAdapter]
    poller: StatusPoller
    storage: StorageUploader
    downloader: AssetDownloader
    health: HealthService
    engine: Engine | None = None
    _unsubscribe: Callable[[], None] | None = field(default=None, repr=False)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        clock: Clock | None = None,
        backend: QueueBackend | None = None,
        repository: JobRepository | None = None,
        providers: Mapping[ProviderId, ProviderAdapter] | None = None,
        storage: StorageUploader | None = None,
        downloader: AssetDownloader | None = None,
    ) -> "OrchestratorContext":
        clock = clock or SystemClock()
        engine: Engine | None = None
        if repository is None:
            engine, session_factory = build_session_factory(config.database_url)
            init_db(engine)
            repository = SqlAlchemyJobRepository(session_factory)
        if backend is None:
            backend = build_queue_backend(
                QueueBackendConfig(
                    dsn=config.queue_dsn,
                    statement_timeout_ms=config.queue_statement_timeout_ms,
                )
            )
        queue = JobQueue(
            backend,
            retry_policy=RetryPolicy(
                base_delay_seconds=config.backoff_base_seconds,
                cap_delay_seconds=config.backoff_cap_seconds,
                jitter_seconds=config.backoff_jitter_seconds,
            ),
            clock=clock,
            default_options=JobOptions(
                max_attempts=config.max_attempts,
                backoff_seconds=config.backoff_base_seconds,
                retain_completed_seconds=config.retain_completed_seconds,
                retain_failed_seconds=config.retain_failed_seconds,
            ),
            retention=RetentionLimits(
                keep_completed=config.retain_completed_count,
                keep_failed=config.retain_failed_count,
            ),
            claim_lease_seconds=config.claim_lease_seconds,
            rate_limit=StartRateLimit(
                max_jobs=config.rate_limit_max_jobs,
                window_seconds=config.rate_limit_window_seconds,
            ),
        )
        return cls(
            config=config,
            clock=clock,
            backend=backend,
            queue=queue,
            repository=repository,
            providers=dict(providers) if providers is not None else build_provider_registry(config),
            poller=StatusPoller(
                poll_interval_seconds=config.poll_interval_seconds,
                max_attempts=config.max_poll_attempts,
                progress_cap=config.poll_progress_cap,
                clock=clock,
            ),
            storage=storage
            or LocalStorageUploader(config.storage_root, config.storage_public_base_url),
            downloader=downloader
            or AssetDownloader(timeout_seconds=config.download_timeout_seconds),
            health=HealthService(
                queue,
                heartbeat_window=timedelta(seconds=config.heartbeat_window_seconds),
                clock=clock,
            ),
            engine=engine,
        )

    def start(self) -> None:
        """Mirror queue events into the job repository.

        The mirror is durable: terminal jobs stay in the queue until the
        repository has recorded them.
        """

        if self._unsubscribe is None:
            self._unsubscribe = self.queue.subscribe(
                JobRepositorySink(self.repository), durable=True
            )
            logger.info(
                "orchestrator.started",
                extra={"providers": sorted(provider.value for provider in self.providers)},
            )

    def build_worker(self) -> VideoGenerationWorker:
        if not self.providers:
            logger.warning("orchestrator.no_providers_configured")
        return VideoGenerationWorker(
            queue=self.queue,
            providers=self.providers,
            poller=self.poller,
            storage=self.storage,
            downloader=self.downloader,
            clock=self.clock,
            concurrency=self.config.worker_concurrency,
            worker_id=self.config.worker_id,
            shutdown_timeout_seconds=self.config.shutdown_timeout_seconds,
            idle_interval_seconds=self.config.idle_poll_interval_seconds,
            heartbeat_interval_seconds=self.config.heartbeat_interval_seconds,
        )

    async def run_worker(self, shutdown_event: asyncio.Event) -> None:
        """Run one worker and the periodic queue cleanup until shutdown."""

        self.start()
        worker = self.build_worker()
        cleanup = asyncio.create_task(
            run_periodic_queue_cleanup(
                queue=self.queue,
                shutdown_event=shutdown_event,
                interval_seconds=self.config.cleanup_interval_seconds,
                older_than=timedelta(seconds=self.config.cleanup_grace_seconds),
                limit=self.config.cleanup_batch_limit,
            ),
            name="queue-cleanup",
        )
        try:
            await worker.run_forever(shutdown_event)
        finally:
            shutdown_event.set()
            await cleanup

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.queue.close()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("orchestrator.closed")

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)

    async def __aenter__(self) -> "OrchestratorContext":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["OrchestratorContext"]
