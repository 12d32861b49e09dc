"""
Aggregation Job Framework

Shared execution path for the daily, weekly and monthly tiers:

- a per-(job_type, period) lock in the fast store; contention means skip
- an AggregationJobLog row written RUNNING and finalized exactly once
- one transaction per dimension group, with per-group failure isolation
- cooperative cancellation between groups
- cache invalidation once the period's rows are written

Scheduled runs and backfills use the same ``run`` method.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import polars as pl
import structlog
from prometheus_client import Counter, Histogram

from event_pipeline.config.settings import AggregationSettings
from event_pipeline.database.models import JobStatus, JobType
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import LockContention, TransientStoreError
from event_pipeline.stores.base import FastStore

logger = structlog.get_logger(__name__)

JOB_RUNS = Counter(
    "event_pipeline_aggregation_jobs_total",
    "Aggregation job runs by tier and final status",
    ["job_type", "status"],
)

JOB_DURATION = Histogram(
    "event_pipeline_aggregation_job_seconds",
    "Aggregation job duration",
    ["job_type"],
)

SUMMED_COLUMNS = ("views", "clicks", "conversions", "revenue_cents", "engagement_seconds")
GROWTH_COLUMNS = ("views", "clicks", "conversions", "revenue_cents")

CompletionHook = Callable[[JobType, date, date], Awaitable[None]]


@dataclass
class JobResult:
    """Outcome of one aggregation run for one period"""
    job_type: JobType
    period_start: date
    period_end: date
    status: Optional[JobStatus] = None
    skipped: bool = False
    records_processed: int = 0
    failed_groups: Dict[str, str] = field(default_factory=dict)
    log_id: Optional[uuid.UUID] = None
    error: Optional[str] = None

    @property
    def errors_count(self) -> int:
        return len(self.failed_groups) + (1 if self.error else 0)


def empty_totals() -> Dict[str, Any]:
    return {
        "views": 0,
        "clicks": 0,
        "conversions": 0,
        "revenue_cents": 0,
        "engagement_seconds": 0.0,
        "unique_visitors": 0,
    }


def rollup_daily_rows(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Sum DailyMetric rows per dimension key.

    Visitor counts cannot be summed across days without double counting,
    so the rollup keeps the highest daily value.
    """
    if not rows:
        return {}
    df = pl.DataFrame(
        [
            {
                "dimension_key": row["dimension_key"],
                "views": int(row["views"]),
                "clicks": int(row["clicks"]),
                "conversions": int(row["conversions"]),
                "revenue_cents": int(row["revenue_cents"]),
                "engagement_seconds": float(row["engagement_seconds"]),
                "unique_visitors": int(row["unique_visitors"]),
            }
            for row in rows
        ]
    )
    summary = df.group_by("dimension_key").agg(
        [pl.col(column).sum() for column in SUMMED_COLUMNS]
        + [pl.col("unique_visitors").max()]
    )
    totals = {}
    for record in summary.to_dicts():
        key = record.pop("dimension_key")
        record["engagement_seconds"] = round(float(record["engagement_seconds"]), 3)
        totals[key] = record
    return totals


class AggregationJob(ABC):
    """
    Base class for one aggregation tier.

    Subclasses define the period containing a day, how to compute the
    per-dimension values for a period and how to write one group.
    """

    job_type: JobType

    def __init__(
        self,
        repository: AnalyticsRepository,
        store: FastStore,
        config: AggregationSettings,
        on_completed: Optional[CompletionHook] = None,
    ):
        self.repository = repository
        self.store = store
        self.config = config
        self.on_completed = on_completed

    @abstractmethod
    def period_for(self, day: date) -> Tuple[date, date]:
        """Inclusive (start, end) of the period containing ``day``"""

    @abstractmethod
    def periods_in_range(self, start: date, end: date) -> List[Tuple[date, date]]:
        """Every period overlapping the inclusive range, oldest first"""

    @abstractmethod
    async def compute_groups(self, start: date, end: date) -> Dict[str, Dict[str, Any]]:
        """Values per dimension key for the period, including stale keys reset to zero"""

    @abstractmethod
    async def write_group(self, start: date, end: date, dimension_key: str, values: Dict[str, Any]) -> None:
        """Upsert one dimension group"""

    def lock_key(self, start: date) -> str:
        return f"lock:aggregation:{self.job_type.value}:{start.isoformat()}"

    async def _acquire(self, start: date) -> str:
        token = await self.store.acquire_lock(self.lock_key(start), ttl=self.config.lock_ttl_seconds)
        if token is None:
            raise LockContention(self.lock_key(start))
        return token

    async def _release(self, start: date, token: str) -> None:
        try:
            await self.store.release_lock(self.lock_key(start), token)
        except TransientStoreError as e:
            # The lock TTL frees the period eventually
            logger.warning("Failed to release aggregation lock", lock=self.lock_key(start), error=str(e))

    async def run(self, day: date, cancel_event: Optional[asyncio.Event] = None) -> JobResult:
        """
        Aggregate the period containing ``day``.

        Returns a skipped result when another run owns the period and a
        FAILED result when the lock store is unavailable. On cancellation
        the log is finalized before CancelledError propagates.
        """
        start, end = self.period_for(day)
        result = JobResult(job_type=self.job_type, period_start=start, period_end=end)
        log = logger.bind(job_type=self.job_type.value, period_start=str(start), period_end=str(end))

        try:
            token = await self._acquire(start)
        except LockContention:
            log.info("Aggregation period locked by another run, skipping")
            result.skipped = True
            JOB_RUNS.labels(job_type=self.job_type.value, status="SKIPPED").inc()
            return result
        except TransientStoreError as e:
            log.error("Could not acquire aggregation lock", error=str(e))
            result.status = JobStatus.FAILED
            result.error = str(e)
            await self._record_unstarted(start, end, result, log)
            JOB_RUNS.labels(job_type=self.job_type.value, status=result.status.value).inc()
            return result

        try:
            with JOB_DURATION.labels(job_type=self.job_type.value).time():
                await self._execute(start, end, result, cancel_event, log)
        finally:
            await self._release(start, token)

        JOB_RUNS.labels(job_type=self.job_type.value, status=result.status.value).inc()

        if result.status in (JobStatus.COMPLETED, JobStatus.PARTIAL) and self.on_completed is not None:
            try:
                await self.on_completed(self.job_type, start, end)
            except Exception as e:
                log.error("Post-aggregation hook failed", error=str(e))
        return result

    async def _execute(self, start, end, result: JobResult, cancel_event, log) -> None:
        try:
            result.log_id = await self.repository.create_job_log(self.job_type.value, start, end)
        except TransientStoreError as e:
            result.status = JobStatus.FAILED
            result.error = str(e)
            log.error("Could not open aggregation job log", error=str(e))
            return
        log.info("Aggregation started", log_id=str(result.log_id))
        cancelled = False

        try:
            groups = await self.compute_groups(start, end)
            for dimension_key in sorted(groups):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                try:
                    await self.write_group(start, end, dimension_key, groups[dimension_key])
                    result.records_processed += 1
                except Exception as e:
                    result.failed_groups[dimension_key] = str(e)
                    log.warning("Aggregation group failed", dimension_key=dimension_key, error=str(e))
        except asyncio.CancelledError:
            result.status = JobStatus.PARTIAL if result.records_processed else JobStatus.FAILED
            result.error = "cancelled"
            await asyncio.shield(self._finalize(result, cancelled=True))
            log.warning("Aggregation cancelled", records_processed=result.records_processed)
            raise
        except Exception as e:
            result.status = JobStatus.FAILED
            result.error = str(e)
            await self._finalize(result)
            log.error("Aggregation failed", error=str(e))
            return

        if cancelled:
            result.status = JobStatus.PARTIAL
            result.error = "cancelled"
        elif not result.failed_groups:
            result.status = JobStatus.COMPLETED
        elif result.records_processed:
            result.status = JobStatus.PARTIAL
        else:
            result.status = JobStatus.FAILED
        await self._finalize(result, cancelled=cancelled)
        log.info(
            "Aggregation finished",
            status=result.status.value,
            records_processed=result.records_processed,
            failed_groups=len(result.failed_groups),
        )

    async def _record_unstarted(self, start, end, result: JobResult, log) -> None:
        """Log a run that failed before it could start"""
        try:
            result.log_id = await self.repository.create_job_log(self.job_type.value, start, end)
            await self._finalize(result)
        except TransientStoreError as e:
            log.error("Could not record failed aggregation run", error=str(e))

    async def _finalize(self, result: JobResult, cancelled: bool = False) -> None:
        if result.log_id is None:
            return
        await self.repository.finalize_job_log(
            result.log_id,
            result.status,
            records_processed=result.records_processed,
            errors_count=result.errors_count,
            error_message=result.error,
            details={"failed_groups": result.failed_groups, "cancelled": cancelled},
        )

    async def backfill(
        self,
        start: date,
        end: date,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[JobResult]:
        """Run every period overlapping [start, end] sequentially"""
        results = []
        for period_start, _ in self.periods_in_range(start, end):
            if cancel_event is not None and cancel_event.is_set():
                break
            results.append(await self.run(period_start, cancel_event=cancel_event))
        logger.info(
            "Backfill finished",
            job_type=self.job_type.value,
            periods=len(results),
            skipped=sum(1 for r in results if r.skipped),
        )
        return results
