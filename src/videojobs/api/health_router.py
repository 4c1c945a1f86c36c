"""Worker health endpoint."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from ..services.health import HealthService


def build_health_router(service: HealthService) -> APIRouter:
    router = APIRouter(prefix="/api/health", tags=["health"])

    @router.get("/worker")
    def worker_health() -> JSONResponse:
        report = service.check()
        return JSONResponse(
            status_code=status.HTTP_200_OK if report.healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=report.as_dict(),
        )

    return router
