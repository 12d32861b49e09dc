"""
Request dependencies
"""
from fastapi import HTTPException, Request

from event_pipeline.pipeline import AnalyticsPipeline


def get_pipeline(request: Request) -> AnalyticsPipeline:
    """The pipeline built by the application lifespan"""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline
