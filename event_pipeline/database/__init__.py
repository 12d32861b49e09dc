"""
Durable store: models, connection and repository
"""
from .connection import check_database_health, create_schema, init_database, session_scope
from .models import (
    AggregationJobLog,
    Base,
    DailyMetric,
    EventAttribution,
    JobStatus,
    JobType,
    MetricKind,
    MonthlyMetric,
    RawEvent,
    RealtimeMetricValue,
    WeeklyMetric,
)
from .repository import AnalyticsRepository

__all__ = [
    "AggregationJobLog",
    "AnalyticsRepository",
    "Base",
    "DailyMetric",
    "EventAttribution",
    "JobStatus",
    "JobType",
    "MetricKind",
    "MonthlyMetric",
    "RawEvent",
    "RealtimeMetricValue",
    "WeeklyMetric",
    "check_database_health",
    "create_schema",
    "init_database",
    "session_scope",
]
