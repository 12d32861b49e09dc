"""
API Routes Module
"""
from .admin import router as admin_router
from .events import router as events_router
from .health import router as health_router
from .metrics import router as metrics_router

__all__ = [
    "admin_router",
    "events_router",
    "health_router",
    "metrics_router",
]
