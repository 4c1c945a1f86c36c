"""Start a video generation worker until SIGINT/SIGTERM."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from src.videojobs.core.config import AppConfig
from src.videojobs.logging import configure_logging
from src.videojobs.services.container import OrchestratorContext


logger = logging.getLogger("videojobs.run_worker")


async def serve(config: AppConfig) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    async with OrchestratorContext.from_config(config) as context:
        logger.info("worker.process.started", extra={"providers": sorted(p.value for p in context.providers)})
        await context.run_worker(shutdown_event)
    logger.info("worker.process.stopped")


def main(argv: list[str] | None = None) -> int:
    _ = argv
    configure_logging()
    try:
        config = AppConfig.build_default()
    except Exception as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2
    asyncio.run(serve(config))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
