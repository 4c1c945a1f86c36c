"""FastAPI application entry point.

Run with ``uvicorn --factory src.videojobs.main:create_app``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .api import (
    ApiError,
    api_error_handler,
    build_admin_router,
    build_health_router,
    build_jobs_router,
    queue_unavailable_handler,
)
from .core.config import AppConfig
from .errors import QueueUnavailableError
from .logging import configure_logging
from .services.container import OrchestratorContext


def create_app(
    context: OrchestratorContext | None = None,
    config: AppConfig | None = None,
) -> FastAPI:
    """Build FastAPI instance with configured dependencies.

    An externally supplied ``context`` stays owned by the caller; otherwise
    one is built from ``config`` and closed on application shutdown.
    """
    configure_logging()
    owns_context = context is None
    ctx = context or OrchestratorContext.from_config(config or AppConfig.build_default())

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        ctx.start()
        try:
            yield
        finally:
            if owns_context:
                await ctx.aclose()

    app = FastAPI(title="Video Jobs", lifespan=lifespan)
    app.state.context = ctx
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(QueueUnavailableError, queue_unavailable_handler)
    app.include_router(build_jobs_router(ctx.queue, ctx.repository))
    app.include_router(build_admin_router(ctx.queue, ctx.clock))
    app.include_router(build_health_router(ctx.health))
    return app
