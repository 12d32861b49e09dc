"""
HTTP API
"""
from .middleware import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
