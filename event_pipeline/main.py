"""
FastAPI Application

Main entry point for the Event Analytics Pipeline API.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from prometheus_client import make_asgi_app

from event_pipeline.config import get_settings
from event_pipeline.config.logging import configure_logging
from event_pipeline.pipeline import AnalyticsPipeline
from event_pipeline.serving.api import RequestLoggingMiddleware
from event_pipeline.serving.api.routes import (
    admin_router,
    events_router,
    health_router,
    metrics_router,
)

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline on startup; flush and drain it on shutdown."""
    configure_logging(settings.monitoring.log_level)
    logger.info("Starting Event Analytics Pipeline", app_env=settings.app_env)

    pipeline = await AnalyticsPipeline.create(settings)
    await pipeline.start()
    app.state.pipeline = pipeline

    yield

    logger.info("Shutting down...")
    await pipeline.close()
    app.state.pipeline = None


app = FastAPI(
    title="Event Analytics Pipeline",
    description="Event ingestion, deduplication, enrichment and metrics aggregation",
    version=settings.version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(events_router, prefix="/api/v1/events", tags=["Events"])
app.include_router(metrics_router, prefix="/api/v1/metrics", tags=["Metrics"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["Admin"])

app.mount("/metrics", make_asgi_app())


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.version,
        "environment": settings.app_env,
        "documentation": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
