"""
Aggregate Metrics Queries

Dashboard read entry points for the daily, weekly and monthly tiers. Every
read goes through the metrics cache. When a tier cannot be read, the next
coarser tier covering the same range is served instead and the result is
marked degraded.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import structlog

from event_pipeline.database.models import JobType
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import TransientStoreError
from event_pipeline.timeutils import week_start
from .cache import MetricsCacheLayer

logger = structlog.get_logger(__name__)

TIER_ORDER = (JobType.DAILY, JobType.WEEKLY, JobType.MONTHLY)


@dataclass
class MetricsResult:
    """Rows served for an aggregate read"""
    requested_tier: JobType
    tier: JobType
    dimension_key: str
    start: date
    end: date
    rows: List[Dict[str, Any]] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_tier": self.requested_tier.value,
            "tier": self.tier.value,
            "dimension_key": self.dimension_key,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "degraded": self.degraded,
            "rows": self.rows,
        }


def covering_range(tier: JobType, start: date, end: date) -> Tuple[date, date]:
    """Range of period starts in ``tier`` that overlaps [start, end]"""
    if tier == JobType.WEEKLY:
        return week_start(start), end
    if tier == JobType.MONTHLY:
        return start.replace(day=1), end
    return start, end


class MetricsQueryService:
    """
    Cached reads of the aggregate tiers.

    Example:
        service = MetricsQueryService(repository, cache)
        result = await service.get_daily("post=post-123", start, end)
    """

    def __init__(self, repository: AnalyticsRepository, cache: MetricsCacheLayer):
        self.repository = repository
        self.cache = cache
        self._loaders = {
            JobType.DAILY: repository.fetch_daily_rows,
            JobType.WEEKLY: repository.fetch_weekly_rows,
            JobType.MONTHLY: repository.fetch_monthly_rows,
        }

    async def _read_tier(self, tier: JobType, dimension_key: str, start: date, end: date) -> List[Dict[str, Any]]:
        range_start, range_end = covering_range(tier, start, end)
        loader = self._loaders[tier]

        async def _load() -> List[Dict[str, Any]]:
            return await loader(range_start, range_end, dimension_key)

        return await self.cache.read_through(tier.value, dimension_key, range_start, range_end, _load)

    async def get(self, tier: JobType, dimension_key: str, start: date, end: date) -> MetricsResult:
        """
        Read one tier, falling back to coarser tiers on store failure.

        Raises:
            ValueError: If start is after end
            TransientStoreError: If no tier could be read
        """
        if start > end:
            raise ValueError("start must not be after end")

        last_error: Optional[TransientStoreError] = None
        for candidate in TIER_ORDER[TIER_ORDER.index(tier):]:
            try:
                rows = await self._read_tier(candidate, dimension_key, start, end)
            except TransientStoreError as e:
                logger.warning(
                    "Metrics tier unavailable",
                    tier=candidate.value,
                    dimension_key=dimension_key,
                    error=str(e),
                )
                last_error = e
                continue
            degraded = candidate != tier
            if degraded:
                logger.info("Serving coarser metrics tier", requested=tier.value, served=candidate.value)
            return MetricsResult(
                requested_tier=tier,
                tier=candidate,
                dimension_key=dimension_key,
                start=start,
                end=end,
                rows=rows,
                degraded=degraded,
            )
        raise last_error

    async def get_daily(self, dimension_key: str, start: date, end: date) -> MetricsResult:
        return await self.get(JobType.DAILY, dimension_key, start, end)

    async def get_weekly(self, dimension_key: str, start: date, end: date) -> MetricsResult:
        return await self.get(JobType.WEEKLY, dimension_key, start, end)

    async def get_monthly(self, dimension_key: str, start: date, end: date) -> MetricsResult:
        return await self.get(JobType.MONTHLY, dimension_key, start, end)
