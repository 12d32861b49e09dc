"""
Daily Aggregation

Builds DailyMetric rows from the non-duplicate RawEvent rows of one day.
Every event counts toward its own dimension key and the platform-wide key.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import polars as pl
import structlog

from event_pipeline.database.models import DailyMetric, JobType
from event_pipeline.events import classify_event, contributing_keys, decode_dimension_key
from event_pipeline.timeutils import day_bounds, iter_days
from .base import AggregationJob, empty_totals

logger = structlog.get_logger(__name__)

EVENT_FRAME_SCHEMA = {
    "dimension_key": pl.Utf8,
    "views": pl.Int64,
    "clicks": pl.Int64,
    "conversions": pl.Int64,
    "revenue_cents": pl.Int64,
    "engagement_seconds": pl.Float64,
    "visitor": pl.Utf8,
    "source": pl.Utf8,
}


def visitor_id(event: Dict[str, Any]) -> Optional[str]:
    """Best available visitor identity: actor, then session"""
    if event.get("actor_id"):
        return f"actor:{event['actor_id']}"
    if event.get("session_id"):
        return f"session:{event['session_id']}"
    return None


def build_event_frame(events: List[Dict[str, Any]]) -> pl.DataFrame:
    """One row per (event, contributing dimension key) with classified metric columns"""
    records = []
    for event in events:
        contribution = classify_event(event["event_type"], event.get("props_json"))
        source = event.get("referrer_category") or "unknown"
        for key in contributing_keys(event.get("dimension_key") or ""):
            records.append({
                "dimension_key": key,
                "views": contribution.views,
                "clicks": contribution.clicks,
                "conversions": contribution.conversions,
                "revenue_cents": contribution.revenue_cents,
                "engagement_seconds": contribution.engagement_seconds,
                "visitor": visitor_id(event),
                "source": source,
            })
    return pl.DataFrame(records, schema=EVENT_FRAME_SCHEMA)


def summarize_events(df: pl.DataFrame) -> Dict[str, Dict[str, Any]]:
    """Per-dimension daily totals, visitor counts and per-source view counts"""
    if df.is_empty():
        return {}

    totals = df.group_by("dimension_key").agg(
        pl.col("views").sum(),
        pl.col("clicks").sum(),
        pl.col("conversions").sum(),
        pl.col("revenue_cents").sum(),
        pl.col("engagement_seconds").sum(),
        pl.col("visitor").drop_nulls().n_unique().alias("unique_visitors"),
        pl.len().alias("event_count"),
    )

    sources = (
        df.filter(pl.col("views") > 0)
        .group_by(["dimension_key", "source"])
        .agg(pl.col("views").sum().alias("source_views"))
    )
    breakdown: Dict[str, Dict[str, int]] = {}
    for record in sources.to_dicts():
        breakdown.setdefault(record["dimension_key"], {})[record["source"]] = int(record["source_views"])

    groups = {}
    for record in totals.to_dicts():
        key = record.pop("dimension_key")
        record["engagement_seconds"] = round(float(record["engagement_seconds"]), 3)
        record["event_count"] = int(record["event_count"])
        record["unique_visitors"] = int(record["unique_visitors"])
        record["source_breakdown"] = dict(sorted(breakdown.get(key, {}).items()))
        groups[key] = record
    return groups


class DailyAggregationJob(AggregationJob):
    """
    Daily tier.

    Re-running a day overwrites each row with values computed from the same
    input, and groups that no longer have events are reset to zero.
    """

    job_type = JobType.DAILY

    def period_for(self, day: date) -> Tuple[date, date]:
        return day, day

    def periods_in_range(self, start: date, end: date) -> List[Tuple[date, date]]:
        return [(day, day) for day in iter_days(start, end)]

    async def compute_groups(self, start: date, end: date) -> Dict[str, Dict[str, Any]]:
        window_start, window_end = day_bounds(start)
        events = await self.repository.fetch_events_for_window(window_start, window_end)
        groups = summarize_events(build_event_frame(events))

        existing = await self.repository.existing_dimension_keys(DailyMetric, metric_date=start)
        for key in existing:
            if key not in groups:
                groups[key] = {**empty_totals(), "event_count": 0, "source_breakdown": {}}

        logger.debug("Daily groups computed", day=str(start), events=len(events), groups=len(groups))
        return groups

    async def write_group(self, start: date, end: date, dimension_key: str, values: Dict[str, Any]) -> None:
        row = {
            "metric_date": start,
            "dimension_key": dimension_key,
            **decode_dimension_key(dimension_key),
            "views": int(values["views"]),
            "clicks": int(values["clicks"]),
            "conversions": int(values["conversions"]),
            "revenue_cents": int(values["revenue_cents"]),
            "unique_visitors": int(values["unique_visitors"]),
            "engagement_seconds": float(values["engagement_seconds"]),
            "event_count": int(values["event_count"]),
            "source_breakdown": values["source_breakdown"],
        }
        await self.repository.upsert_metric_row(DailyMetric, row, ["metric_date", "dimension_key"])
