"""
Metrics serving: tiered cache and aggregate queries
"""
from .cache import CacheStats, MetricsCacheLayer, cache_key
from .query import MetricsQueryService, MetricsResult

__all__ = [
    "CacheStats",
    "MetricsCacheLayer",
    "MetricsQueryService",
    "MetricsResult",
    "cache_key",
]
