"""
Weekly Aggregation

Builds WeeklyMetric rows (Monday to Sunday) from the week's DailyMetric
rows, with week-over-week growth against the preceding seven days.
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Tuple

from event_pipeline.database.models import JobType, WeeklyMetric
from event_pipeline.events import decode_dimension_key
from event_pipeline.timeutils import growth_pct, iter_weeks, week_bounds
from .base import GROWTH_COLUMNS, AggregationJob, empty_totals, rollup_daily_rows

DAYS_IN_WEEK = 7


class WeeklyAggregationJob(AggregationJob):
    """Weekly tier built only from DailyMetric"""

    job_type = JobType.WEEKLY

    def period_for(self, day: date) -> Tuple[date, date]:
        return week_bounds(day)

    def periods_in_range(self, start: date, end: date) -> List[Tuple[date, date]]:
        return [week_bounds(monday) for monday in iter_weeks(start, end)]

    async def compute_groups(self, start: date, end: date) -> Dict[str, Dict[str, Any]]:
        current = rollup_daily_rows(await self.repository.fetch_daily_rows(start, end))
        previous = rollup_daily_rows(
            await self.repository.fetch_daily_rows(start - timedelta(days=DAYS_IN_WEEK), start - timedelta(days=1))
        )

        for key in await self.repository.existing_dimension_keys(WeeklyMetric, week_start=start):
            current.setdefault(key, empty_totals())

        groups = {}
        for key, totals in current.items():
            prior = previous.get(key)
            values = dict(totals)
            for column in GROWTH_COLUMNS:
                values[f"{column}_growth"] = growth_pct(totals[column], prior[column] if prior else None)
            groups[key] = values
        return groups

    async def write_group(self, start: date, end: date, dimension_key: str, values: Dict[str, Any]) -> None:
        row = {
            "week_start": start,
            "week_end": end,
            "dimension_key": dimension_key,
            **decode_dimension_key(dimension_key),
            "views": int(values["views"]),
            "clicks": int(values["clicks"]),
            "conversions": int(values["conversions"]),
            "revenue_cents": int(values["revenue_cents"]),
            "unique_visitors": int(values["unique_visitors"]),
            "engagement_seconds": float(values["engagement_seconds"]),
            "days_in_period": DAYS_IN_WEEK,
            "avg_daily_views": round(values["views"] / DAYS_IN_WEEK, 2),
            "avg_daily_revenue_cents": round(values["revenue_cents"] / DAYS_IN_WEEK, 2),
            "views_growth_pct": values["views_growth"],
            "clicks_growth_pct": values["clicks_growth"],
            "conversions_growth_pct": values["conversions_growth"],
            "revenue_growth_pct": values["revenue_cents_growth"],
        }
        await self.repository.upsert_metric_row(WeeklyMetric, row, ["week_start", "dimension_key"])
