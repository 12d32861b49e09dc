"""
Database Models - Event and Metric Tiers

Durable schema for the analytics pipeline:

Event Tables:
- RawEvent: Immutable ingested events (duplicate flag is the only mutation)
- EventAttribution: 1:1 enrichment record, written asynchronously

Metric Tables:
- DailyMetric: Per (date, dimension_key) rollup built from RawEvent
- WeeklyMetric: Per (week_start, dimension_key) rollup built from DailyMetric
- MonthlyMetric: Per (year, month, dimension_key) rollup built from DailyMetric

Operational Tables:
- RealtimeMetricValue: Durable checkpoint of fast-store realtime metrics
- AggregationJobLog: Audit trail of aggregation job executions

Generic column types are used throughout so the schema also runs on SQLite.
"""

from datetime import datetime, date
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from event_pipeline.timeutils import utcnow


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class JobType(str, Enum):
    """Aggregation job tiers"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class JobStatus(str, Enum):
    """Aggregation job status"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"


class MetricKind(str, Enum):
    """Realtime metric value kinds"""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    RATE = "rate"


# =============================================================================
# EVENT TABLES
# =============================================================================

class RawEvent(Base):
    """
    Ingested analytics event.

    Written once by the ingestion buffer. Duplicates found by the sweep are
    flagged in place and keep a pointer to the surviving event.
    """
    __tablename__ = "raw_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="web")
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    session_id: Mapped[Optional[str]] = mapped_column(String(128))

    # Entity refs
    project_id: Mapped[Optional[str]] = mapped_column(String(64))
    asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    post_id: Mapped[Optional[str]] = mapped_column(String(64))
    license_id: Mapped[Optional[str]] = mapped_column(String(64))
    dimension_key: Mapped[str] = mapped_column(String(300), nullable=False, default="")

    props_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    context_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Deduplication
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128))
    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_of: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    flagged_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    attribution: Mapped[Optional["EventAttribution"]] = relationship(
        back_populates="event", uselist=False, lazy="noload"
    )

    __table_args__ = (
        Index("ix_raw_events_occurred_at", "occurred_at"),
        Index("ix_raw_events_fingerprint", "fingerprint"),
        Index("ix_raw_events_ingested_at", "ingested_at"),
        Index("ix_raw_events_type_occurred", "event_type", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<RawEvent {self.event_type} {self.id}>"


class EventAttribution(Base):
    """Derived traffic attribution for an event"""
    __tablename__ = "event_attributions"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("raw_events.id", ondelete="CASCADE"), primary_key=True
    )
    device_type: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    browser: Mapped[Optional[str]] = mapped_column(String(32))
    os: Mapped[Optional[str]] = mapped_column(String(32))
    is_bot: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    referrer: Mapped[Optional[str]] = mapped_column(Text)
    referrer_domain: Mapped[Optional[str]] = mapped_column(String(255))
    referrer_category: Mapped[str] = mapped_column(String(16), nullable=False, default="direct")
    utm_source: Mapped[Optional[str]] = mapped_column(String(128))
    utm_medium: Mapped[Optional[str]] = mapped_column(String(128))
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(128))
    utm_term: Mapped[Optional[str]] = mapped_column(String(128))
    utm_content: Mapped[Optional[str]] = mapped_column(String(128))
    enriched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    event: Mapped["RawEvent"] = relationship(back_populates="attribution")


# =============================================================================
# METRIC TABLES
# =============================================================================

class DailyMetric(Base):
    """Daily rollup per dimension key ("" is platform-wide)"""
    __tablename__ = "daily_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    dimension_key: Mapped[str] = mapped_column(String(300), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(64))
    asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    post_id: Mapped[Optional[str]] = mapped_column(String(64))
    license_id: Mapped[Optional[str]] = mapped_column(String(64))

    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    engagement_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_breakdown: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("metric_date", "dimension_key", name="uq_daily_metrics_date_dim"),
        Index("ix_daily_metrics_dim_date", "dimension_key", "metric_date"),
    )


class WeeklyMetric(Base):
    """Weekly (Monday to Sunday) rollup built from DailyMetric"""
    __tablename__ = "weekly_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    week_end: Mapped[date] = mapped_column(Date, nullable=False)
    dimension_key: Mapped[str] = mapped_column(String(300), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(64))
    asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    post_id: Mapped[Optional[str]] = mapped_column(String(64))
    license_id: Mapped[Optional[str]] = mapped_column(String(64))

    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    engagement_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    days_in_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_daily_views: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_daily_revenue_cents: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    views_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    clicks_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    conversions_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    revenue_growth_pct: Mapped[Optional[float]] = mapped_column(Float)

    __table_args__ = (
        UniqueConstraint("week_start", "dimension_key", name="uq_weekly_metrics_week_dim"),
        Index("ix_weekly_metrics_dim_week", "dimension_key", "week_start"),
    )


class MonthlyMetric(Base):
    """Calendar month rollup built from DailyMetric"""
    __tablename__ = "monthly_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    month_start: Mapped[date] = mapped_column(Date, nullable=False)
    month_end: Mapped[date] = mapped_column(Date, nullable=False)
    dimension_key: Mapped[str] = mapped_column(String(300), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(64))
    asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    post_id: Mapped[Optional[str]] = mapped_column(String(64))
    license_id: Mapped[Optional[str]] = mapped_column(String(64))

    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    engagement_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    days_in_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weeks_in_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_daily_views: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_daily_revenue_cents: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    weekly_breakdown: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    views_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    clicks_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    conversions_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    revenue_growth_pct: Mapped[Optional[float]] = mapped_column(Float)
    views_yoy_pct: Mapped[Optional[float]] = mapped_column(Float)
    clicks_yoy_pct: Mapped[Optional[float]] = mapped_column(Float)
    conversions_yoy_pct: Mapped[Optional[float]] = mapped_column(Float)
    revenue_yoy_pct: Mapped[Optional[float]] = mapped_column(Float)

    __table_args__ = (
        UniqueConstraint("year", "month", "dimension_key", name="uq_monthly_metrics_month_dim"),
        Index("ix_monthly_metrics_dim_month", "dimension_key", "year", "month"),
    )


# =============================================================================
# OPERATIONAL TABLES
# =============================================================================

class RealtimeMetricValue(Base):
    """Durable checkpoint of a realtime metric"""
    __tablename__ = "realtime_metric_values"

    key: Mapped[str] = mapped_column(String(500), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    samples: Mapped[Any] = mapped_column(JSON, nullable=True)
    ttl_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_realtime_metric_values_expires_at", "expires_at"),
    )


class AggregationJobLog(Base):
    """
    One row per aggregation job execution.

    Created RUNNING and finalized exactly once; rows are never touched after
    completed_at is set.
    """
    __tablename__ = "aggregation_job_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.RUNNING.value)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_aggregation_job_logs_type_period", "job_type", "period_start"),
        Index("ix_aggregation_job_logs_status", "status"),
    )
