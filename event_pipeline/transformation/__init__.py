"""
Event enrichment: attribution derivation and the worker pool
"""
from .enrichers import AttributionEnricher, categorize_referrer, parse_user_agent
from .worker_pool import EnrichmentWorkerPool, PoolStats, WorkItem

__all__ = [
    "AttributionEnricher",
    "EnrichmentWorkerPool",
    "PoolStats",
    "WorkItem",
    "categorize_referrer",
    "parse_user_agent",
]
