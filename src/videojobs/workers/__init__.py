"""Background workers executing queued video jobs."""

from .video_worker import VideoGenerationWorker

__all__ = ["VideoGenerationWorker"]
