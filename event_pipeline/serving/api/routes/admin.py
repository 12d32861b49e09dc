"""
Administrative Endpoints

Backfills, buffer flushes, cache invalidation, job log inspection,
realtime reconciliation and dead-letter replay.
"""

import uuid
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from event_pipeline.aggregation import JobResult
from event_pipeline.database.models import JobStatus, JobType
from event_pipeline.errors import TransientStoreError
from event_pipeline.pipeline import AnalyticsPipeline
from ..dependencies import get_pipeline

router = APIRouter()
logger = structlog.get_logger(__name__)


class BackfillRequest(BaseModel):
    job_type: JobType
    start: date
    end: date


class JobResultResponse(BaseModel):
    job_type: str
    period_start: date
    period_end: date
    status: Optional[str]
    skipped: bool
    records_processed: int
    errors_count: int
    failed_groups: Dict[str, str]
    log_id: Optional[uuid.UUID]


class CacheInvalidateRequest(BaseModel):
    pattern: str = Field(default="*", description="Glob within the cache namespace, e.g. daily:*")


class ReconcileRequest(BaseModel):
    key: str = Field(default="*", description="Metric key, or * for every known metric")


class JobLogResponse(BaseModel):
    id: uuid.UUID
    job_type: str
    period_start: date
    period_end: date
    started_at: datetime
    completed_at: Optional[datetime]
    status: str
    records_processed: int
    errors_count: int
    error_message: Optional[str]
    details: Dict[str, Any]


def _job_result(result: JobResult) -> JobResultResponse:
    return JobResultResponse(
        job_type=result.job_type.value,
        period_start=result.period_start,
        period_end=result.period_end,
        status=result.status.value if result.status else None,
        skipped=result.skipped,
        records_processed=result.records_processed,
        errors_count=result.errors_count,
        failed_groups=result.failed_groups,
        log_id=result.log_id,
    )


@router.post("/backfill", response_model=List[JobResultResponse])
async def backfill(
    request: BackfillRequest,
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> List[JobResultResponse]:
    """Recompute every period of one tier overlapping the range"""
    if request.start > request.end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    logger.info(
        "Backfill requested",
        job_type=request.job_type.value,
        start=str(request.start),
        end=str(request.end),
    )
    results = await pipeline.backfill(request.job_type, request.start, request.end)
    return [_job_result(r) for r in results]


@router.post("/flush")
async def force_flush(pipeline: AnalyticsPipeline = Depends(get_pipeline)) -> Dict[str, int]:
    """Flush the ingestion buffer now"""
    return {"written": await pipeline.force_flush()}


@router.post("/cache/invalidate")
async def invalidate_cache(
    request: CacheInvalidateRequest,
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> Dict[str, int]:
    try:
        removed = await pipeline.invalidate_cache(request.pattern)
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"removed": removed}


@router.get("/jobs", response_model=List[JobLogResponse])
async def get_job_logs(
    job_type: Optional[JobType] = None,
    status: Optional[JobStatus] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> List[JobLogResponse]:
    """Aggregation job logs, newest first"""
    logs = await pipeline.get_job_logs(
        job_type=job_type.value if job_type else None,
        status=status.value if status else None,
        period_start=period_start,
        period_end=period_end,
        limit=limit,
    )
    return [JobLogResponse(**log) for log in logs]


@router.post("/realtime/reconcile")
async def reconcile_realtime(
    request: ReconcileRequest,
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        results = await pipeline.reconcile_realtime_metric(request.key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "reconciled": len(results),
        "corrected": sum(1 for r in results if r.corrected),
        "results": [asdict(r) for r in results],
    }


@router.post("/dead-letters/replay")
async def replay_dead_letters(pipeline: AnalyticsPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Re-submit dead-lettered batches to the durable store"""
    return asdict(await pipeline.replay_dead_letters())


@router.post("/maintenance")
async def run_maintenance(pipeline: AnalyticsPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Run one maintenance cycle now"""
    return await pipeline.run_maintenance()
