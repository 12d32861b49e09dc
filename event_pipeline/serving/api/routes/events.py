"""
Event Ingestion Endpoints

Producers submit raw events here. Payloads are taken as plain JSON objects
so that malformed events are reported through the ingestion result rather
than rejected wholesale by request validation.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from event_pipeline.ingestion import IngestResult
from event_pipeline.pipeline import AnalyticsPipeline
from ..dependencies import get_pipeline

router = APIRouter()

MAX_BATCH_EVENTS = 1000


class IngestResponse(BaseModel):
    """Result for one submitted event"""
    accepted: bool
    duplicate: bool = False
    event_id: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class BatchIngestResponse(BaseModel):
    """Results for a submitted batch, in submission order"""
    accepted: int
    duplicates: int
    rejected: int
    results: List[IngestResponse]


def _to_response(result: IngestResult) -> IngestResponse:
    return IngestResponse(
        accepted=result.accepted,
        duplicate=result.duplicate,
        event_id=result.event_id,
        errors=result.errors,
    )


@router.post("", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_event(
    response: Response,
    payload: Dict[str, Any] = Body(...),
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """
    Submit one event.

    Returns 202 when accepted (including silently dropped duplicates) and
    422 with the field errors when the event is malformed.
    """
    result = await pipeline.submit_event(payload)
    if not result.accepted:
        response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return _to_response(result)


@router.post("/batch", response_model=BatchIngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_events(
    payload: List[Dict[str, Any]] = Body(...),
    pipeline: AnalyticsPipeline = Depends(get_pipeline),
) -> BatchIngestResponse:
    """Submit several events; each is validated and deduplicated independently"""
    if len(payload) > MAX_BATCH_EVENTS:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"At most {MAX_BATCH_EVENTS} events per batch",
        )
    results = await pipeline.submit_events(payload)
    return BatchIngestResponse(
        accepted=sum(1 for r in results if r.accepted and not r.duplicate),
        duplicates=sum(1 for r in results if r.duplicate),
        rejected=sum(1 for r in results if not r.accepted),
        results=[_to_response(r) for r in results],
    )
