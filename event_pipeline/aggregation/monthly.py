"""
Monthly Aggregation

Builds MonthlyMetric rows from the calendar month's DailyMetric rows with
an embedded weekly breakdown, month-over-month growth and, when the same
month of the prior year was materialized, year-over-year growth.
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Tuple

import polars as pl

from event_pipeline.database.models import JobType, MonthlyMetric
from event_pipeline.events import decode_dimension_key
from event_pipeline.timeutils import growth_pct, iter_months, iter_weeks, month_bounds, previous_month, week_start
from .base import GROWTH_COLUMNS, AggregationJob, empty_totals, rollup_daily_rows


def weekly_breakdown(
    rows: List[Dict[str, Any]], month_start: date, month_end: date
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Per-dimension weekly totals within a month.

    Every calendar week overlapping the month is listed, clipped to the
    month's boundaries, with zeros for weeks without data.
    """
    weeks = [max(monday, month_start) for monday in iter_weeks(month_start, month_end)]
    if not rows:
        return {}

    df = pl.DataFrame(
        [
            {
                "dimension_key": row["dimension_key"],
                "week": max(week_start(row["metric_date"]), month_start),
                "views": int(row["views"]),
                "clicks": int(row["clicks"]),
                "conversions": int(row["conversions"]),
                "revenue_cents": int(row["revenue_cents"]),
            }
            for row in rows
        ]
    )
    summary = df.group_by(["dimension_key", "week"]).agg(
        [pl.col(column).sum() for column in GROWTH_COLUMNS]
    )

    per_key: Dict[str, Dict[date, Dict[str, int]]] = {}
    for record in summary.to_dicts():
        per_key.setdefault(record["dimension_key"], {})[record["week"]] = {
            column: int(record[column]) for column in GROWTH_COLUMNS
        }

    breakdown = {}
    for key, by_week in per_key.items():
        entries = []
        for index, first_day in enumerate(weeks):
            last_day = weeks[index + 1] - timedelta(days=1) if index + 1 < len(weeks) else month_end
            totals = by_week.get(first_day, {column: 0 for column in GROWTH_COLUMNS})
            entries.append({
                "week_number": index + 1,
                "week_start": first_day.isoformat(),
                "week_end": last_day.isoformat(),
                **totals,
            })
        breakdown[key] = entries
    return breakdown


class MonthlyAggregationJob(AggregationJob):
    """Monthly tier built only from DailyMetric (never RawEvent)"""

    job_type = JobType.MONTHLY

    def period_for(self, day: date) -> Tuple[date, date]:
        return month_bounds(day.year, day.month)

    def periods_in_range(self, start: date, end: date) -> List[Tuple[date, date]]:
        return [month_bounds(year, month) for year, month in iter_months(start, end)]

    async def compute_groups(self, start: date, end: date) -> Dict[str, Dict[str, Any]]:
        daily_rows = await self.repository.fetch_daily_rows(start, end)
        current = rollup_daily_rows(daily_rows)

        prev_start, prev_end = month_bounds(*previous_month(start.year, start.month))
        previous = rollup_daily_rows(await self.repository.fetch_daily_rows(prev_start, prev_end))

        last_year_start = date(start.year - 1, start.month, 1)
        last_year = {
            row["dimension_key"]: row
            for row in await self.repository.fetch_monthly_rows(last_year_start, last_year_start)
        }

        for key in await self.repository.existing_dimension_keys(
            MonthlyMetric, year=start.year, month=start.month
        ):
            current.setdefault(key, empty_totals())

        breakdown = weekly_breakdown(daily_rows, start, end)
        weeks_in_month = len(list(iter_weeks(start, end)))

        groups = {}
        for key, totals in current.items():
            prior = previous.get(key)
            prior_year = last_year.get(key)
            values = dict(totals)
            for column in GROWTH_COLUMNS:
                values[f"{column}_growth"] = growth_pct(totals[column], prior[column] if prior else None)
                values[f"{column}_yoy"] = growth_pct(totals[column], prior_year[column] if prior_year else None)
            values["weekly_breakdown"] = breakdown.get(key, [])
            values["weeks_in_month"] = weeks_in_month
            groups[key] = values
        return groups

    async def write_group(self, start: date, end: date, dimension_key: str, values: Dict[str, Any]) -> None:
        days = (end - start).days + 1
        row = {
            "year": start.year,
            "month": start.month,
            "month_start": start,
            "month_end": end,
            "dimension_key": dimension_key,
            **decode_dimension_key(dimension_key),
            "views": int(values["views"]),
            "clicks": int(values["clicks"]),
            "conversions": int(values["conversions"]),
            "revenue_cents": int(values["revenue_cents"]),
            "unique_visitors": int(values["unique_visitors"]),
            "engagement_seconds": float(values["engagement_seconds"]),
            "days_in_period": days,
            "weeks_in_month": values["weeks_in_month"],
            "avg_daily_views": round(values["views"] / days, 2),
            "avg_daily_revenue_cents": round(values["revenue_cents"] / days, 2),
            "weekly_breakdown": values["weekly_breakdown"],
            "views_growth_pct": values["views_growth"],
            "clicks_growth_pct": values["clicks_growth"],
            "conversions_growth_pct": values["conversions_growth"],
            "revenue_growth_pct": values["revenue_cents_growth"],
            "views_yoy_pct": values["views_yoy"],
            "clicks_yoy_pct": values["clicks_yoy"],
            "conversions_yoy_pct": values["conversions_yoy"],
            "revenue_yoy_pct": values["revenue_cents_yoy"],
        }
        await self.repository.upsert_metric_row(
            MonthlyMetric, row, ["year", "month", "dimension_key"]
        )
