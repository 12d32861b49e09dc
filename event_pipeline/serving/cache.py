"""
Metrics Cache Layer

Read-through cache in front of the aggregate metric tiers with:
- Deterministic keys per (tier, period range, dimension key)
- Three static TTL tiers chosen from the age of the period
- Period-overlap invalidation fired when an aggregation run completes
- Hit/miss counters per tier

Key layout: ``cache:{tier}:{start}:{end}:{dimension_key}``
"""

import json
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from prometheus_client import Counter

from event_pipeline.config.settings import CacheSettings
from event_pipeline.errors import TransientStoreError
from event_pipeline.stores.base import FastStore

logger = structlog.get_logger(__name__)

CACHE_PREFIX = "cache:"

CACHE_REQUESTS = Counter(
    "event_pipeline_cache_requests_total",
    "Metrics cache lookups by tier and result",
    ["tier", "result"],
)


def cache_key(tier: str, dimension_key: str, start: date, end: date) -> str:
    """Deterministic cache key for an aggregate read"""
    return f"{CACHE_PREFIX}{tier}:{start.isoformat()}:{end.isoformat()}:{dimension_key}"


def parse_cache_key(key: str) -> Tuple[str, date, date, str]:
    """Inverse of cache_key; the dimension key is everything after the end date"""
    if not key.startswith(CACHE_PREFIX):
        raise ValueError(f"Not a cache key: {key!r}")
    parts = key[len(CACHE_PREFIX):].split(":", 3)
    if len(parts) != 4:
        raise ValueError(f"Malformed cache key: {key!r}")
    tier, start, end, dimension_key = parts
    return tier, date.fromisoformat(start), date.fromisoformat(end), dimension_key


def to_jsonable(value: Any) -> Any:
    """Normalize a loader result to what a cache hit would return"""
    return json.loads(json.dumps(value, default=str))


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total, 4) if total else 0.0


class MetricsCacheLayer:
    """
    Tiered read-through cache for aggregate metrics.

    Fast-store failures never fail a read: the loader result is returned
    uncached instead.

    Example:
        cache = MetricsCacheLayer(store, settings.cache)
        rows = await cache.read_through("daily", "", start, end, loader)
    """

    def __init__(
        self,
        store: FastStore,
        config: CacheSettings,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.config = config
        self._today = today
        self._stats = CacheStats()

    def ttl_for(self, end: date) -> int:
        """
        TTL tier for a period ending on ``end``.

        Periods reaching today (or later) are still changing and get the short
        tier; recently closed periods get the medium tier; older periods are
        immutable and get the long tier.
        """
        today = self._today()
        if end >= today:
            return self.config.short_ttl_seconds
        if end >= today - timedelta(days=self.config.recent_window_days):
            return self.config.medium_ttl_seconds
        return self.config.long_ttl_seconds

    async def read_through(
        self,
        tier: str,
        dimension_key: str,
        start: date,
        end: date,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Return the cached value for a read, loading and caching it on a miss.

        Args:
            tier: Metric tier name (daily, weekly, monthly)
            dimension_key: Canonical dimension key, "" for platform-wide
            start: First day of the requested range
            end: Last day of the requested range
            loader: Coroutine function producing the value from the durable store

        Returns:
            JSON-compatible value
        """
        key = cache_key(tier, dimension_key, start, end)

        try:
            cached = await self.store.get_json(key)
        except TransientStoreError as e:
            self._stats.errors += 1
            logger.warning("Cache read failed, loading directly", key=key, error=str(e))
            return to_jsonable(await loader())

        if cached is not None:
            self._stats.hits += 1
            CACHE_REQUESTS.labels(tier=tier, result="hit").inc()
            return cached

        self._stats.misses += 1
        CACHE_REQUESTS.labels(tier=tier, result="miss").inc()
        value = to_jsonable(await loader())

        try:
            await self.store.set_json(key, value, ttl=self.ttl_for(end))
        except TransientStoreError as e:
            self._stats.errors += 1
            logger.warning("Cache write failed", key=key, error=str(e))
        return value

    async def invalidate(self, pattern: str = "*") -> int:
        """
        Delete cache entries matching a glob pattern within the cache namespace.

        Example:
            await cache.invalidate("daily:*")
        """
        if not pattern.startswith(CACHE_PREFIX):
            pattern = f"{CACHE_PREFIX}{pattern}"
        removed = await self.store.delete_pattern(pattern)
        self._stats.invalidations += removed
        logger.info("Cache invalidated", pattern=pattern, removed=removed)
        return removed

    async def invalidate_period(self, tier: str, start: date, end: date) -> int:
        """Delete every cached read of ``tier`` whose range overlaps [start, end]"""
        stale = []
        for key in await self.store.keys(f"{CACHE_PREFIX}{tier}:*"):
            try:
                _, key_start, key_end, _ = parse_cache_key(key)
            except ValueError:
                continue
            if key_start <= end and key_end >= start:
                stale.append(key)

        removed = await self.store.delete(*stale) if stale else 0
        self._stats.invalidations += removed
        logger.debug(
            "Cache period invalidated",
            tier=tier,
            start=str(start),
            end=str(end),
            removed=removed,
        )
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {**asdict(self._stats), "hit_rate": self._stats.hit_rate}
