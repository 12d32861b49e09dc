"""
Unit Tests - Realtime Metrics
"""
from datetime import datetime, timedelta

import pytest

from conftest import make_event
from event_pipeline.config.settings import RealtimeSettings
from event_pipeline.database.models import MetricKind
from event_pipeline.realtime import (
    RealtimeMetricsEngine,
    RealtimeReconciler,
    build_metric_key,
    parse_metric_key,
)
from event_pipeline.realtime.engine import histogram_stats
from event_pipeline.timeutils import utcnow

INGESTED_KEY = "metric:counter:events_ingested:date=2024-01-15"


@pytest.fixture
def engine(store, repository, clock) -> RealtimeMetricsEngine:
    return RealtimeMetricsEngine(store, repository, RealtimeSettings(histogram_max_samples=50), clock=clock)


@pytest.fixture
def reconciler(engine, repository) -> RealtimeReconciler:
    return RealtimeReconciler(engine, repository)


class TestMetricKeys:
    """Tests for metric key layout"""

    def test_dimensions_sorted(self):
        key = build_metric_key(MetricKind.COUNTER, "views", {"region": "eu", "device": "mobile"})

        assert key == "metric:counter:views:device=mobile|region=eu"
        assert parse_metric_key(key) == (MetricKind.COUNTER, "views", {"device": "mobile", "region": "eu"})

    def test_no_dimensions(self):
        assert build_metric_key(MetricKind.GAUGE, "active_sessions") == "metric:gauge:active_sessions"
        assert parse_metric_key("metric:gauge:active_sessions") == (MetricKind.GAUGE, "active_sessions", {})

    @pytest.mark.parametrize("name", ["", "a:b", "a|b", "a=b"])
    def test_invalid_name(self, name):
        with pytest.raises(ValueError):
            build_metric_key(MetricKind.COUNTER, name)

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            parse_metric_key("cache:daily:x")
        with pytest.raises(ValueError):
            parse_metric_key("metric:sparkline:x")


class TestRealtimeEngine:
    """Tests for realtime writes and reads"""

    async def test_counter(self, engine):
        await engine.increment("signups")
        total = await engine.increment("signups", 2)

        value = await engine.get_value("metric:counter:signups")
        assert total == 3.0
        assert value.value == 3.0
        assert value.source == "fast"

    async def test_counter_rejects_negative(self, engine):
        with pytest.raises(ValueError):
            await engine.increment("signups", -1)

    async def test_gauge(self, engine):
        await engine.set_gauge("active_sessions", 12)
        await engine.set_gauge("active_sessions", 7)

        assert (await engine.get_value("metric:gauge:active_sessions")).value == 7.0

    async def test_histogram_stats(self, engine, clock):
        for n in range(1, 101):
            await engine.record_histogram("flush_ms", n)
            clock.advance(0.001)

        value = await engine.get_value("metric:histogram:flush_ms")

        assert value.value == 50
        assert value.stats["count"] == 50
        assert value.stats["min"] == 51.0
        assert value.stats["max"] == 100.0

    async def test_rate_window(self, engine, clock):
        for _ in range(3):
            rate = await engine.record_rate("requests", window_seconds=60)

        assert rate == pytest.approx(3 / 60)

        clock.advance(61)
        assert await engine.record_rate("requests", window_seconds=60) == pytest.approx(1 / 60)

    async def test_rate_read_uses_recorded_window(self, engine):
        for _ in range(10):
            written = await engine.record_rate("logins", window_seconds=10)

        value = await engine.get_value("metric:rate:logins")

        assert written == 1.0
        assert value.value == 1.0
        assert value.source == "fast"

    async def test_missing_metric_defaults_to_zero(self, engine):
        value = await engine.get_value("metric:counter:never_written")

        assert value.value == 0.0
        assert value.source == "default"

    async def test_bulk_values(self, engine):
        await engine.increment("signups", 2)
        await engine.set_gauge("active_sessions", 5)

        values = await engine.get_bulk_values(
            ["metric:counter:signups", "metric:gauge:active_sessions", "metric:counter:never_written"]
        )

        assert {key: v.value for key, v in values.items()} == {
            "metric:counter:signups": 2.0,
            "metric:gauge:active_sessions": 5.0,
            "metric:counter:never_written": 0.0,
        }

    async def test_ttl_expiry(self, engine, clock):
        await engine.increment("signups", ttl=10)
        clock.advance(10)

        assert (await engine.get_value("metric:counter:signups")).source == "default"


class TestCheckpoint:
    """Tests for durable checkpoints"""

    async def test_checkpoint_serves_after_fast_loss(self, engine, store):
        await engine.increment("signups", 4)

        assert await engine.checkpoint() == 1
        await store.delete("metric:counter:signups")

        value = await engine.get_value("metric:counter:signups")
        assert value.value == 4.0
        assert value.source == "durable"

    async def test_checkpoint_only_dirty_metrics(self, engine):
        await engine.increment("signups")
        await engine.checkpoint()

        assert await engine.checkpoint() == 0

    async def test_histogram_checkpoint_keeps_samples(self, engine, store):
        for n in (10, 20, 30):
            await engine.record_histogram("latency", n)
        await engine.checkpoint()
        await store.delete("metric:histogram:latency")

        value = await engine.get_value("metric:histogram:latency")
        assert value.source == "durable"
        assert value.stats["p50"] == 20.0

    async def test_rate_checkpoint_keeps_window(self, engine, reconciler, store):
        for _ in range(5):
            await engine.record_rate("logins", window_seconds=10)
        await engine.checkpoint()
        await store.delete("metric:rate:logins", "realtime:window:metric:rate:logins")

        durable = await engine.get_value("metric:rate:logins")
        result = await reconciler.reconcile_key("metric:rate:logins")
        restored = await engine.get_value("metric:rate:logins")

        assert durable.value == 0.5
        assert durable.source == "durable"
        assert result.action == "restored"
        assert restored.value == 0.5
        assert restored.source == "fast"

    async def test_expired_checkpoint_ignored(self, engine, repository):
        past = utcnow() - timedelta(minutes=1)
        await repository.upsert_realtime_values([{
            "key": "metric:gauge:stale",
            "kind": "gauge",
            "value": 9.0,
            "samples": None,
            "ttl_seconds": 60,
            "expires_at": past,
            "last_updated": past,
        }])

        assert (await engine.get_value("metric:gauge:stale")).source == "default"

    async def test_list_keys_merges_stores(self, engine, store):
        await engine.increment("signups")
        await engine.set_gauge("active_sessions", 1)
        await engine.checkpoint()
        await store.delete("metric:gauge:active_sessions")

        assert await engine.list_keys() == ["metric:counter:signups", "metric:gauge:active_sessions"]


class TestReconciler:
    """Tests for drift correction"""

    async def test_drift_corrected_from_events(self, engine, reconciler, repository, store):
        await repository.insert_events([
            make_event(actor_id="user-1").to_row(),
            make_event(actor_id="user-2").to_row(),
            make_event(actor_id="user-3", occurred_at=datetime(2024, 1, 16, 9, 0, 0)).to_row(),
        ])
        await engine.increment("events_ingested", 5, {"date": "2024-01-15"})

        result = await reconciler.reconcile_key(INGESTED_KEY)

        assert (result.before, result.after) == (5.0, 2.0)
        assert result.corrected is True
        assert result.action == "resolved"
        assert float(await store.get(INGESTED_KEY)) == 2.0
        checkpoint = (await repository.get_realtime_values([INGESTED_KEY]))[INGESTED_KEY]
        assert checkpoint["value"] == 2.0

    async def test_matching_value_not_corrected(self, engine, reconciler, repository):
        await repository.insert_events([make_event().to_row()])
        await engine.increment("events_ingested", 1, {"date": "2024-01-15"})

        result = await reconciler.reconcile_key(INGESTED_KEY)

        assert result.corrected is False

    async def test_custom_resolver(self, engine, reconciler):
        async def count_signups(dimensions):
            return 42.0

        reconciler.register("signups", count_signups)
        await engine.increment("signups", 40)

        result = await reconciler.reconcile_key("metric:counter:signups")

        assert result.after == 42.0
        assert (await engine.get_value("metric:counter:signups")).value == 42.0

    async def test_restores_lost_fast_value(self, engine, reconciler, store):
        await engine.increment("signups", 3)
        await engine.checkpoint()
        await store.delete("metric:counter:signups")

        result = await reconciler.reconcile_key("metric:counter:signups")

        assert result.action == "restored"
        assert result.corrected is True
        assert float(await store.get("metric:counter:signups")) == 3.0

    async def test_checkpoints_fast_value(self, engine, reconciler, repository):
        await engine.set_gauge("active_sessions", 8)

        result = await reconciler.reconcile_key("metric:gauge:active_sessions")

        assert result.action == "checkpointed"
        stored = await repository.get_realtime_values(["metric:gauge:active_sessions"])
        assert stored["metric:gauge:active_sessions"]["value"] == 8.0

    async def test_absent_metric(self, reconciler):
        result = await reconciler.reconcile_key("metric:counter:ghost")

        assert result.action == "absent"
        assert result.corrected is False

    async def test_reconcile_all(self, engine, reconciler):
        await engine.increment("signups")
        await engine.set_gauge("active_sessions", 1)

        results = await reconciler.reconcile("*")

        assert sorted(r.key for r in results) == ["metric:counter:signups", "metric:gauge:active_sessions"]

    async def test_clear_expired(self, reconciler, repository):
        past = utcnow() - timedelta(minutes=1)
        await repository.upsert_realtime_values([{
            "key": "metric:counter:old",
            "kind": "counter",
            "value": 1.0,
            "samples": None,
            "ttl_seconds": 60,
            "expires_at": past,
            "last_updated": past,
        }])

        assert await reconciler.clear_expired() == 1
        assert await repository.list_realtime_keys() == []


def test_histogram_stats_empty():
    assert histogram_stats([])["count"] == 0
