"""Queue storage backends."""

from .base import QueueBackend
from .memory import InMemoryQueueBackend
from .postgres import (
    PostgresQueueBackend,
    QueueBackendConfig,
    SQLiteQueueBackend,
    build_queue_backend,
)

__all__ = [
    "InMemoryQueueBackend",
    "PostgresQueueBackend",
    "QueueBackend",
    "QueueBackendConfig",
    "SQLiteQueueBackend",
    "build_queue_backend",
]
