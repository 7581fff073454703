"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems, plus the
Prometheus scrape endpoint.
"""

from datetime import datetime
from typing import Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from src.database.connection import check_database_health
from src.serving.api.dependencies import ServiceContainer, get_container
from src.serving.cache import check_redis_health

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


async def _dependency_checks(container: ServiceContainer) -> Dict[str, Dict[str, Any]]:
    checks: Dict[str, Dict[str, Any]] = {}
    settings = container.settings
    if settings.storage_backend == "sql":
        checks["database"] = await check_database_health()
    else:
        checks["storage"] = {"status": "healthy", "backend": "memory"}
    if settings.webhooks.dedup_backend == "redis":
        checks["redis"] = await check_redis_health()
    return checks


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ServiceContainer = Depends(get_container)) -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Storage backend connectivity
    - Redis connectivity (when it holds webhook dedup records)
    """
    checks = await _dependency_checks(container)
    overall_status = "healthy"
    if any(check.get("status") != "healthy" for check in checks.values()):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=container.settings.version,
        environment=container.settings.app_env,
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes liveness probe endpoint.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, str]:
    """
    Kubernetes readiness probe endpoint.

    Returns 200 if the application is ready to receive traffic.
    """
    checks = await _dependency_checks(container)
    for name, check in checks.items():
        if check.get("status") != "healthy":
            response.status_code = 503
            return {"status": "not_ready", "reason": f"{name}_unavailable"}
    return {"status": "ready"}


@router.get("/metrics")
async def metrics(container: ServiceContainer = Depends(get_container)) -> Response:
    if not container.settings.monitoring.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
