"""Cron entry point for evicting old terminal jobs from the queue."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import timedelta

from src.videojobs.core.config import AppConfig
from src.videojobs.lifecycle import queue_cleanup_once
from src.videojobs.services.container import OrchestratorContext


@dataclass(slots=True)
class CleanupSummary:
    removed: int
    terminal_remaining: int
    dry_run: bool


def perform_cleanup(
    context: OrchestratorContext,
    *,
    older_than: timedelta,
    limit: int,
    dry_run: bool,
) -> CleanupSummary:
    """Execute cleanup logic and return summary counters."""
    if dry_run:
        counts = context.queue.counts()
        return CleanupSummary(removed=0, terminal_remaining=counts.completed + counts.failed, dry_run=True)

    removed = queue_cleanup_once(queue=context.queue, older_than=older_than, limit=limit)
    counts = context.queue.counts()
    return CleanupSummary(
        removed=len(removed),
        terminal_remaining=counts.completed + counts.failed,
        dry_run=False,
    )


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evict finished jobs from the video job queue.")
    parser.add_argument("--dry-run", action="store_true", help="Only report counts without deleting jobs.")
    parser.add_argument(
        "--older-than-hours",
        type=float,
        default=None,
        help="Evict terminal jobs finished before this many hours ago (default: configured grace).",
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs evicted in one run.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or [])
    try:
        config = AppConfig.build_default()
        older_than = (
            timedelta(hours=args.older_than_hours)
            if args.older_than_hours is not None
            else timedelta(seconds=config.cleanup_grace_seconds)
        )
        context = OrchestratorContext.from_config(config, providers={})
        context.start()
        try:
            summary = perform_cleanup(
                context,
                older_than=older_than,
                limit=args.limit or config.cleanup_batch_limit,
                dry_run=args.dry_run,
            )
        finally:
            context.close()
    except Exception as exc:
        print(f"cleanup failed: {exc}", file=sys.stderr)
        return 2

    if summary.dry_run:
        print(f"cleanup dry-run, terminal_jobs={summary.terminal_remaining}", file=sys.stdout)
    else:
        print(
            f"cleanup done, removed={summary.removed}, terminal_remaining={summary.terminal_remaining}",
            file=sys.stdout,
        )
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
