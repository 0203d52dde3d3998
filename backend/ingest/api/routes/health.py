"""Health endpoints - liveness and pipeline health."""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from backend.ingest.api.deps import get_service
from backend.ingest.models import SystemHealth
from backend.ingest.pipeline.service import IngestService

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/system/health", response_model=SystemHealth)
async def system_health(
    response: Response,
    service: Annotated[IngestService, Depends(get_service)],
) -> SystemHealth:
    """Queue counts and worker stats.

    Returns:
        200 when healthy or degraded, 503 when no worker pool is healthy
    """
    report = await service.system_health()
    if report.status == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return report
