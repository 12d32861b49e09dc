"""
Unit Tests - Metrics Cache and Queries
"""
from datetime import date

import pytest

from event_pipeline.config.settings import CacheSettings
from event_pipeline.database.models import DailyMetric, JobType, WeeklyMetric
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import TransientStoreError
from event_pipeline.serving import MetricsCacheLayer, MetricsQueryService, cache_key
from event_pipeline.serving.cache import parse_cache_key
from event_pipeline.stores.memory import MemoryFastStore

TODAY = date(2024, 1, 20)
POST = "post=post-123"


class BrokenCacheStore(MemoryFastStore):
    """Fast store that times out on every read"""

    async def get(self, key):
        raise TransientStoreError("redis", "get")


class DailyDownRepository(AnalyticsRepository):
    async def fetch_daily_rows(self, start, end, dimension_key=None):
        raise TransientStoreError("database", "fetch_daily_rows")


class AllDownRepository(DailyDownRepository):
    async def fetch_weekly_rows(self, start, end, dimension_key=None):
        raise TransientStoreError("database", "fetch_weekly_rows")

    async def fetch_monthly_rows(self, start, end, dimension_key=None):
        raise TransientStoreError("database", "fetch_monthly_rows")


@pytest.fixture
def cache(store) -> MetricsCacheLayer:
    return MetricsCacheLayer(store, CacheSettings(), today=lambda: TODAY)


class CountingLoader:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


class TestCacheKeys:
    """Tests for cache key layout"""

    def test_layout(self):
        key = cache_key("daily", "project=p|post=x", date(2024, 1, 1), date(2024, 1, 7))

        assert key == "cache:daily:2024-01-01:2024-01-07:project=p|post=x"
        assert parse_cache_key(key) == ("daily", date(2024, 1, 1), date(2024, 1, 7), "project=p|post=x")

    def test_platform_key(self):
        assert parse_cache_key(cache_key("weekly", "", TODAY, TODAY))[3] == ""

    def test_not_a_cache_key(self):
        with pytest.raises(ValueError):
            parse_cache_key("metric:counter:x")


class TestTtlTiers:
    """Tests for TTL tier selection"""

    @pytest.mark.parametrize(
        "end, expected",
        [
            (date(2024, 1, 21), 60),
            (TODAY, 60),
            (date(2024, 1, 15), 300),
            (date(2024, 1, 13), 300),
            (date(2024, 1, 12), 3600),
            (date(2023, 6, 1), 3600),
        ],
    )
    def test_ttl_for(self, cache, end, expected):
        assert cache.ttl_for(end) == expected


class TestReadThrough:
    """Tests for read-through caching"""

    async def test_miss_then_hit(self, cache, store):
        loader = CountingLoader([{"metric_date": date(2024, 1, 1), "views": 3}])

        first = await cache.read_through("daily", POST, date(2024, 1, 1), date(2024, 1, 1), loader)
        second = await cache.read_through("daily", POST, date(2024, 1, 1), date(2024, 1, 1), loader)

        assert loader.calls == 1
        assert first == second == [{"metric_date": "2024-01-01", "views": 3}]
        stats = cache.get_stats()
        assert (stats["hits"], stats["misses"], stats["hit_rate"]) == (1, 1, 0.5)

    async def test_entry_uses_ttl_tier(self, cache, store):
        await cache.read_through("daily", POST, TODAY, TODAY, CountingLoader([]))

        assert await store.ttl(cache_key("daily", POST, TODAY, TODAY)) == pytest.approx(60)

    async def test_entry_expires(self, cache, clock):
        loader = CountingLoader([])
        await cache.read_through("daily", POST, TODAY, TODAY, loader)
        clock.advance(60)

        await cache.read_through("daily", POST, TODAY, TODAY, loader)

        assert loader.calls == 2

    async def test_store_failure_falls_back_to_loader(self, clock):
        cache = MetricsCacheLayer(BrokenCacheStore(clock=clock), CacheSettings(), today=lambda: TODAY)
        loader = CountingLoader([{"views": 1}])

        assert await cache.read_through("daily", POST, TODAY, TODAY, loader) == [{"views": 1}]
        assert await cache.read_through("daily", POST, TODAY, TODAY, loader) == [{"views": 1}]
        assert loader.calls == 2
        assert cache.get_stats()["errors"] == 2


class TestInvalidation:
    """Tests for cache invalidation"""

    async def _fill(self, cache):
        for tier, start, end in [
            ("daily", date(2024, 1, 1), date(2024, 1, 7)),
            ("daily", date(2024, 1, 8), date(2024, 1, 14)),
            ("weekly", date(2024, 1, 1), date(2024, 1, 7)),
        ]:
            await cache.read_through(tier, POST, start, end, CountingLoader([]))

    async def test_invalidate_period_overlap(self, cache, store):
        await self._fill(cache)

        removed = await cache.invalidate_period("daily", date(2024, 1, 5), date(2024, 1, 6))

        assert removed == 1
        assert await store.keys("cache:*") == [
            "cache:daily:2024-01-08:2024-01-14:post=post-123",
            "cache:weekly:2024-01-01:2024-01-07:post=post-123",
        ]

    async def test_invalidate_period_touching_boundary(self, cache):
        await self._fill(cache)

        assert await cache.invalidate_period("daily", date(2024, 1, 7), date(2024, 1, 8)) == 2

    async def test_invalidate_pattern(self, cache, store):
        await self._fill(cache)

        assert await cache.invalidate("daily:*") == 2
        assert await cache.invalidate() == 1
        assert cache.get_stats()["invalidations"] == 3


class TestQueryService:
    """Tests for tiered aggregate reads"""

    async def test_daily_rows(self, cache, repository):
        await repository.upsert_metric_row(
            DailyMetric,
            {"metric_date": date(2024, 1, 15), "dimension_key": POST, "post_id": "post-123", "views": 7},
            ["metric_date", "dimension_key"],
        )
        service = MetricsQueryService(repository, cache)

        result = await service.get_daily(POST, date(2024, 1, 14), date(2024, 1, 16))

        assert result.degraded is False
        assert [row["views"] for row in result.rows] == [7]
        assert result.rows[0]["metric_date"] == "2024-01-15"

    async def test_invalid_range(self, cache, repository):
        service = MetricsQueryService(repository, cache)

        with pytest.raises(ValueError):
            await service.get_daily(POST, date(2024, 1, 16), date(2024, 1, 14))

    async def test_weekly_range_covers_partial_week(self, cache, repository):
        await repository.upsert_metric_row(
            WeeklyMetric,
            {
                "week_start": date(2024, 1, 15),
                "week_end": date(2024, 1, 21),
                "dimension_key": POST,
                "views": 9,
            },
            ["week_start", "dimension_key"],
        )
        service = MetricsQueryService(repository, cache)

        result = await service.get_weekly(POST, date(2024, 1, 17), date(2024, 1, 18))

        assert [row["views"] for row in result.rows] == [9]

    async def test_falls_back_to_weekly(self, cache, test_engine):
        repository = DailyDownRepository(test_engine, timeout=5.0)
        await repository.upsert_metric_row(
            WeeklyMetric,
            {
                "week_start": date(2024, 1, 15),
                "week_end": date(2024, 1, 21),
                "dimension_key": POST,
                "views": 9,
            },
            ["week_start", "dimension_key"],
        )
        service = MetricsQueryService(repository, cache)

        result = await service.get_daily(POST, date(2024, 1, 15), date(2024, 1, 16))

        assert result.degraded is True
        assert result.requested_tier == JobType.DAILY
        assert result.tier == JobType.WEEKLY
        assert result.rows[0]["views"] == 9
        assert result.to_dict()["tier"] == "weekly"

    async def test_all_tiers_down(self, cache, test_engine):
        service = MetricsQueryService(AllDownRepository(test_engine, timeout=5.0), cache)

        with pytest.raises(TransientStoreError):
            await service.get_daily(POST, date(2024, 1, 15), date(2024, 1, 16))
