"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from event_pipeline.pipeline import AnalyticsPipeline
from event_pipeline.timeutils import utcnow
from ..dependencies import get_pipeline

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(
    response: Response,
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Durable store connectivity
    - Fast store connectivity
    - Ingestion buffer and dead-letter alert
    - Duplicate rate health
    """
    checks = await pipeline.health()
    overall_status = checks.pop("status")
    checks.pop("version", None)
    if overall_status == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall_status,
        version=pipeline.settings.version,
        environment=pipeline.settings.app_env,
        timestamp=utcnow(),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes liveness probe endpoint.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}
