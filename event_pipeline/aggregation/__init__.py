"""
Hierarchical metric aggregation: daily, weekly and monthly tiers
"""
from .base import AggregationJob, JobResult
from .daily import DailyAggregationJob
from .monthly import MonthlyAggregationJob
from .weekly import WeeklyAggregationJob

__all__ = [
    "AggregationJob",
    "DailyAggregationJob",
    "JobResult",
    "MonthlyAggregationJob",
    "WeeklyAggregationJob",
]
