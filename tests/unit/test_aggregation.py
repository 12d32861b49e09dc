"""
Unit Tests - Hierarchical Aggregation
"""
import asyncio
import uuid
from datetime import date, datetime

import pytest

from conftest import make_event
from event_pipeline.aggregation import (
    DailyAggregationJob,
    MonthlyAggregationJob,
    WeeklyAggregationJob,
)
from event_pipeline.aggregation.base import rollup_daily_rows
from event_pipeline.aggregation.monthly import weekly_breakdown
from event_pipeline.config.settings import AggregationSettings
from event_pipeline.database.models import DailyMetric, JobStatus, JobType, MonthlyMetric
from event_pipeline.events import decode_dimension_key
from event_pipeline.errors import TransientStoreError
from event_pipeline.stores.memory import MemoryFastStore

DAY = date(2024, 1, 15)
NOON = datetime(2024, 1, 15, 12, 0, 0)
POST = "post=post-123"


def daily_row(day: date, dimension_key: str = POST, **metrics) -> dict:
    row = {
        "metric_date": day,
        "dimension_key": dimension_key,
        **decode_dimension_key(dimension_key),
        "views": 0,
        "clicks": 0,
        "conversions": 0,
        "revenue_cents": 0,
        "unique_visitors": 0,
        "engagement_seconds": 0.0,
        "event_count": 0,
        "source_breakdown": {},
    }
    row.update(metrics)
    return row


async def insert_daily(repository, *rows) -> None:
    for row in rows:
        await repository.upsert_metric_row(DailyMetric, row, ["metric_date", "dimension_key"])


class LockStoreDown(MemoryFastStore):
    """Fast store whose lock calls time out"""

    async def acquire_lock(self, key, ttl):
        raise TransientStoreError("redis", "acquire_lock")


@pytest.fixture
def config() -> AggregationSettings:
    return AggregationSettings()


@pytest.fixture
def daily_job(repository, store, config) -> DailyAggregationJob:
    return DailyAggregationJob(repository, store, config)


@pytest.fixture
def weekly_job(repository, store, config) -> WeeklyAggregationJob:
    return WeeklyAggregationJob(repository, store, config)


@pytest.fixture
def monthly_job(repository, store, config) -> MonthlyAggregationJob:
    return MonthlyAggregationJob(repository, store, config)


class TestDailyAggregation:
    """Tests for the daily tier"""

    async def test_counts_per_dimension_and_platform(self, daily_job, repository):
        events = [
            make_event(actor_id="user-1"),
            make_event(actor_id="user-2"),
            make_event(
                "post_cta_clicked",
                actor_id="user-1",
                entity_refs={"post_id": "post-123"},
                props={"cta_type": "license"},
            ),
            make_event("checkout_completed", actor_id="user-2", props={"revenue_cents": 4999}),
        ]
        await repository.insert_events([event.to_row() for event in events])

        result = await daily_job.run(DAY)

        assert result.status == JobStatus.COMPLETED
        assert result.records_processed == 2
        rows = {row["dimension_key"]: row for row in await repository.fetch_daily_rows(DAY, DAY)}
        assert rows[POST]["views"] == 2
        assert rows[POST]["clicks"] == 1
        assert rows[POST]["unique_visitors"] == 2
        assert rows[POST]["post_id"] == "post-123"
        assert rows[""]["conversions"] == 1
        assert rows[""]["revenue_cents"] == 4999
        assert rows[""]["event_count"] == 4

    async def test_duplicates_excluded(self, daily_job, repository):
        original = make_event()
        copy = make_event()
        await repository.insert_events([original.to_row(), copy.to_row()])
        await repository.flag_duplicates([(copy.id, original.id)], flagged_at=NOON)

        await daily_job.run(DAY)

        rows = await repository.fetch_daily_rows(DAY, DAY, dimension_key=POST)
        assert rows[0]["views"] == 1

    async def test_events_outside_day_excluded(self, daily_job, repository):
        await repository.insert_events([
            make_event(occurred_at=datetime(2024, 1, 15, 0, 0, 0)).to_row(),
            make_event(occurred_at=datetime(2024, 1, 16, 0, 0, 0)).to_row(),
        ])

        await daily_job.run(DAY)

        rows = await repository.fetch_daily_rows(DAY, DAY, dimension_key=POST)
        assert rows[0]["views"] == 1

    async def test_rerun_is_idempotent(self, daily_job, repository):
        await repository.insert_events([make_event().to_row()])

        await daily_job.run(DAY)
        first = await repository.fetch_daily_rows(DAY, DAY)
        await daily_job.run(DAY)
        second = await repository.fetch_daily_rows(DAY, DAY)

        assert [(r["dimension_key"], r["views"]) for r in first] == [(r["dimension_key"], r["views"]) for r in second]
        assert len(second) == 2

    async def test_stale_group_reset_to_zero(self, daily_job, repository):
        event = make_event()
        await repository.insert_events([event.to_row()])
        await daily_job.run(DAY)

        await repository.flag_duplicates([(event.id, uuid.uuid4())], flagged_at=NOON)
        await daily_job.run(DAY)

        rows = await repository.fetch_daily_rows(DAY, DAY, dimension_key=POST)
        assert rows[0]["views"] == 0
        assert rows[0]["event_count"] == 0

    async def test_source_breakdown_uses_attribution(self, daily_job, repository):
        event = make_event()
        await repository.insert_events([event.to_row()])
        await repository.upsert_attribution({"event_id": event.id, "referrer_category": "search"})

        await daily_job.run(DAY)

        rows = await repository.fetch_daily_rows(DAY, DAY, dimension_key=POST)
        assert rows[0]["source_breakdown"] == {"search": 1}


class TestWeeklyAggregation:
    """Tests for the weekly tier"""

    async def test_sums_week_from_daily_rows(self, weekly_job, repository):
        await insert_daily(
            repository,
            daily_row(date(2024, 1, 15), views=10, unique_visitors=4, revenue_cents=700),
            daily_row(date(2024, 1, 21), views=4, unique_visitors=6),
            daily_row(date(2024, 1, 22), views=100),
        )

        result = await weekly_job.run(date(2024, 1, 17))

        assert (result.period_start, result.period_end) == (date(2024, 1, 15), date(2024, 1, 21))
        row = (await repository.fetch_weekly_rows(DAY, DAY, dimension_key=POST))[0]
        assert row["views"] == 14
        assert row["unique_visitors"] == 6
        assert row["avg_daily_views"] == 2.0
        assert row["avg_daily_revenue_cents"] == 100.0
        assert row["week_end"] == date(2024, 1, 21)

    async def test_growth_without_previous_week_is_null(self, weekly_job, repository):
        await insert_daily(repository, daily_row(DAY, views=1))

        await weekly_job.run(DAY)

        row = (await repository.fetch_weekly_rows(DAY, DAY, dimension_key=POST))[0]
        assert row["views"] == 1
        assert row["views_growth_pct"] is None

    async def test_growth_against_previous_week(self, weekly_job, repository):
        await insert_daily(
            repository,
            daily_row(date(2024, 1, 10), views=100, clicks=0),
            daily_row(DAY, views=150, clicks=3),
        )

        await weekly_job.run(DAY)

        row = (await repository.fetch_weekly_rows(DAY, DAY, dimension_key=POST))[0]
        assert row["views_growth_pct"] == 50.0
        assert row["clicks_growth_pct"] is None

    async def test_ignores_raw_events(self, weekly_job, repository):
        await repository.insert_events([make_event().to_row()])

        result = await weekly_job.run(DAY)

        assert result.records_processed == 0
        assert await repository.fetch_weekly_rows(DAY, DAY) == []


class TestMonthlyAggregation:
    """Tests for the monthly tier"""

    async def test_month_with_breakdown_and_growth(self, monthly_job, repository):
        await insert_daily(
            repository,
            daily_row(date(2023, 12, 10), views=10),
            daily_row(date(2024, 1, 3), views=10),
            daily_row(date(2024, 1, 30), views=5),
        )

        result = await monthly_job.run(date(2024, 1, 20))

        assert (result.period_start, result.period_end) == (date(2024, 1, 1), date(2024, 1, 31))
        row = (await repository.fetch_monthly_rows(date(2024, 1, 1), date(2024, 1, 1), dimension_key=POST))[0]
        assert row["views"] == 15
        assert row["views_growth_pct"] == 50.0
        assert row["views_yoy_pct"] is None
        assert row["days_in_period"] == 31
        assert row["weeks_in_month"] == 5
        breakdown = row["weekly_breakdown"]
        assert [week["views"] for week in breakdown] == [10, 0, 0, 0, 5]
        assert breakdown[-1]["week_end"] == "2024-01-31"

    async def test_year_over_year(self, monthly_job, repository):
        await repository.upsert_metric_row(
            MonthlyMetric,
            {
                "year": 2023,
                "month": 1,
                "month_start": date(2023, 1, 1),
                "month_end": date(2023, 1, 31),
                "dimension_key": POST,
                "post_id": "post-123",
                "views": 30,
                "clicks": 0,
                "conversions": 0,
                "revenue_cents": 0,
            },
            ["year", "month", "dimension_key"],
        )
        await insert_daily(repository, daily_row(date(2024, 1, 3), views=15))

        await monthly_job.run(date(2024, 1, 3))

        row = (await repository.fetch_monthly_rows(date(2024, 1, 1), date(2024, 1, 1), dimension_key=POST))[0]
        assert row["views_yoy_pct"] == -50.0


def test_rollup_takes_max_visitors():
    totals = rollup_daily_rows([
        daily_row(date(2024, 1, 15), views=2, unique_visitors=2),
        daily_row(date(2024, 1, 16), views=3, unique_visitors=3),
    ])

    assert totals[POST]["views"] == 5
    assert totals[POST]["unique_visitors"] == 3


def test_weekly_breakdown_clips_to_month():
    rows = [daily_row(date(2024, 2, 1), views=4), daily_row(date(2024, 2, 29), views=1)]

    weeks = weekly_breakdown(rows, date(2024, 2, 1), date(2024, 2, 29))[POST]

    assert weeks[0]["week_start"] == "2024-02-01"
    assert weeks[0]["week_end"] == "2024-02-04"
    assert weeks[0]["views"] == 4
    assert weeks[-1]["views"] == 1
    assert len(weeks) == 5


class TestJobExecution:
    """Tests for locking, job logs and failure isolation"""

    async def test_lock_contention_skips(self, daily_job, repository, store):
        await store.acquire_lock(daily_job.lock_key(DAY), ttl=900)

        result = await daily_job.run(DAY)

        assert result.skipped is True
        assert result.status is None
        assert await repository.list_job_logs() == []

    async def test_lock_store_unavailable_fails_run(self, repository, config, clock):
        job = DailyAggregationJob(repository, LockStoreDown(clock=clock), config)

        result = await job.run(DAY)

        assert result.status == JobStatus.FAILED
        assert result.skipped is False
        assert "acquire_lock" in result.error
        logs = await repository.list_job_logs(job_type="daily")
        assert [log["status"] for log in logs] == ["FAILED"]
        assert logs[0]["id"] == result.log_id

    async def test_backfill_continues_when_lock_store_unavailable(self, repository, config, clock):
        job = WeeklyAggregationJob(repository, LockStoreDown(clock=clock), config)

        results = await job.backfill(date(2024, 1, 1), date(2024, 1, 14))

        assert [r.status for r in results] == [JobStatus.FAILED, JobStatus.FAILED]

    async def test_lock_released_after_run(self, daily_job, store):
        await daily_job.run(DAY)

        assert await store.get(daily_job.lock_key(DAY)) is None

    async def test_job_log_finalized(self, daily_job, repository):
        await repository.insert_events([make_event().to_row()])

        result = await daily_job.run(DAY)

        logs = await repository.list_job_logs(job_type="daily")
        assert len(logs) == 1
        assert logs[0]["id"] == result.log_id
        assert logs[0]["status"] == "COMPLETED"
        assert logs[0]["records_processed"] == 2
        assert logs[0]["completed_at"] is not None

    async def test_failed_group_is_isolated(self, repository, store, config):
        class FailingPostJob(DailyAggregationJob):
            async def write_group(self, start, end, dimension_key, values):
                if dimension_key == POST:
                    raise RuntimeError("constraint violated")
                await super().write_group(start, end, dimension_key, values)

        await repository.insert_events([make_event().to_row()])
        job = FailingPostJob(repository, store, config)

        result = await job.run(DAY)

        assert result.status == JobStatus.PARTIAL
        assert result.records_processed == 1
        assert list(result.failed_groups) == [POST]
        log = (await repository.list_job_logs())[0]
        assert log["status"] == "PARTIAL"
        assert log["errors_count"] == 1
        assert log["details"]["failed_groups"][POST] == "constraint violated"

    async def test_cancellation_between_groups(self, daily_job, repository):
        await repository.insert_events([make_event().to_row()])
        cancel = asyncio.Event()
        cancel.set()

        result = await daily_job.run(DAY, cancel_event=cancel)

        assert result.status == JobStatus.PARTIAL
        assert result.error == "cancelled"
        assert result.records_processed == 0

    async def test_completion_hook(self, repository, store, config):
        calls = []

        async def on_completed(job_type, start, end):
            calls.append((job_type, start, end))

        job = WeeklyAggregationJob(repository, store, config, on_completed=on_completed)
        await job.run(DAY)

        assert calls == [(JobType.WEEKLY, date(2024, 1, 15), date(2024, 1, 21))]

    async def test_backfill_runs_every_period(self, daily_job, repository):
        results = await daily_job.backfill(date(2024, 1, 14), date(2024, 1, 16))

        assert [r.period_start for r in results] == [date(2024, 1, 14), DAY, date(2024, 1, 16)]
        assert len(await repository.list_job_logs(job_type="daily")) == 3


async def test_stuck_job_reaped(repository):
    log_id = await repository.create_job_log("daily", date(2024, 1, 15), date(2024, 1, 15))

    assert await repository.reap_stuck_jobs(datetime(2000, 1, 1)) == 0
    assert await repository.reap_stuck_jobs(datetime(2100, 1, 1)) == 1

    logs = await repository.list_job_logs(job_type="daily")
    assert logs[0]["id"] == log_id
    assert logs[0]["status"] == JobStatus.FAILED.value
    assert logs[0]["completed_at"] is not None
