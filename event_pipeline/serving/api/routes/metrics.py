"""
Metrics Read Endpoints

Dashboard reads of the aggregate tiers and realtime metrics.
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from event_pipeline.database.models import JobType, MetricKind
from event_pipeline.errors import TransientStoreError
from event_pipeline.events import encode_dimension_key
from event_pipeline.pipeline import AnalyticsPipeline
from event_pipeline.realtime import build_metric_key
from ..dependencies import get_pipeline

router = APIRouter()
logger = structlog.get_logger(__name__)

DEFAULT_RANGE_DAYS = 30


class MetricsResponse(BaseModel):
    """Aggregate rows for a dimension and date range"""
    requested_tier: str
    tier: str
    dimension_key: str
    start: date
    end: date
    degraded: bool
    rows: List[Dict[str, Any]]


class RealtimeResponse(BaseModel):
    """Current value of one realtime metric"""
    key: str
    kind: str
    value: float
    source: str
    stats: Dict[str, float] = {}


@router.get("/realtime/{kind}/{name}", response_model=RealtimeResponse)
async def get_realtime_metric(
    kind: MetricKind,
    name: str,
    request: Request,
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> RealtimeResponse:
    """
    Read a realtime metric. Every query parameter is taken as a dimension,
    e.g. ``/realtime/counter/events_ingested?date=2024-01-15``.
    """
    try:
        key = build_metric_key(kind, name, dict(request.query_params))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        value = await pipeline.get_realtime_value(key)
    except TransientStoreError as e:
        logger.error("Realtime read failed", key=key, error=str(e))
        raise HTTPException(status_code=503, detail="Metrics temporarily unavailable")

    return RealtimeResponse(
        key=value.key,
        kind=value.kind.value,
        value=value.value,
        source=value.source,
        stats=value.stats,
    )


@router.get("/{tier}", response_model=MetricsResponse)
async def get_metrics(
    tier: JobType,
    project_id: Optional[str] = None,
    asset_id: Optional[str] = None,
    post_id: Optional[str] = None,
    license_id: Optional[str] = None,
    start: Optional[date] = Query(default=None, description="First day, defaults to 30 days before end"),
    end: Optional[date] = Query(default=None, description="Last day, defaults to today"),
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> MetricsResponse:
    """
    Get daily, weekly or monthly metrics for one dimension.

    Omitting every entity reference reads the platform-wide totals.
    """
    end = end or date.today()
    start = start or end - timedelta(days=DEFAULT_RANGE_DAYS)
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    try:
        dimension_key = encode_dimension_key(
            project_id=project_id, asset_id=asset_id, post_id=post_id, license_id=license_id
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    readers = {
        JobType.DAILY: pipeline.get_daily_metrics,
        JobType.WEEKLY: pipeline.get_weekly_metrics,
        JobType.MONTHLY: pipeline.get_monthly_metrics,
    }
    try:
        result = await readers[tier](dimension_key, start, end)
    except TransientStoreError as e:
        logger.error("Metrics read failed on every tier", tier=tier.value, error=str(e))
        raise HTTPException(status_code=503, detail="Metrics temporarily unavailable")

    return MetricsResponse(**result.to_dict())
