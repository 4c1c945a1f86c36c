"""HTTP surface of the video job orchestrator."""

from .admin_router import build_admin_router
from .errors import ApiError, api_error_handler, queue_unavailable_handler
from .health_router import build_health_router
from .jobs_router import build_jobs_router

__all__ = [
    "ApiError",
    "api_error_handler",
    "build_admin_router",
    "build_health_router",
    "build_jobs_router",
    "queue_unavailable_handler",
]
