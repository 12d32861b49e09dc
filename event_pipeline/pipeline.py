"""
Analytics Pipeline

Builds the component graph (fast store, durable store, ingestion buffer,
deduplication, enrichment pool, aggregation tiers, realtime engine, metrics
cache) and exposes the producer, dashboard and administrative entry points.
"""

import asyncio
import uuid
from collections import Counter as Tally
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from event_pipeline.aggregation import (
    AggregationJob,
    DailyAggregationJob,
    JobResult,
    MonthlyAggregationJob,
    WeeklyAggregationJob,
)
from event_pipeline.config.settings import Settings
from event_pipeline.database import AnalyticsRepository, JobType, check_database_health, init_database
from event_pipeline.errors import TransientStoreError
from event_pipeline.events import EventIn, ValidatedEvent
from event_pipeline.ingestion import (
    DeadLetterStore,
    DeduplicationEngine,
    IngestionBuffer,
    IngestResult,
    ReplayResult,
    SweepResult,
)
from event_pipeline.realtime import MetricValue, RealtimeMetricsEngine, RealtimeReconciler, ReconcileResult
from event_pipeline.serving.cache import MetricsCacheLayer
from event_pipeline.serving.query import MetricsQueryService, MetricsResult
from event_pipeline.stores import FastStore, create_fast_store
from event_pipeline.timeutils import month_bounds, previous_month, utcnow
from event_pipeline.transformation import AttributionEnricher, EnrichmentWorkerPool

logger = structlog.get_logger(__name__)

EVENTS_INGESTED_METRIC = "events_ingested"


class AnalyticsPipeline:
    """
    Event analytics pipeline service.

    Example:
        pipeline = await AnalyticsPipeline.create(get_settings())
        await pipeline.start()
        await pipeline.submit_event({"event_type": "post_viewed", ...})
        await pipeline.stop()
    """

    def __init__(
        self,
        settings: Settings,
        store: FastStore,
        engine: AsyncEngine,
        repository: Optional[AnalyticsRepository] = None,
    ):
        self.settings = settings
        self.store = store
        self.engine = engine
        self.repository = repository or AnalyticsRepository(
            engine, timeout=settings.database.statement_timeout_seconds
        )

        self.dedup = DeduplicationEngine(store, self.repository, settings.dedup)
        self.dead_letters = DeadLetterStore(settings.data_lake.dead_letter_path)
        self.buffer = IngestionBuffer(
            self.repository,
            self.dedup,
            settings.ingestion,
            self.dead_letters,
            on_flushed=self._on_batch_flushed,
        )

        self.enricher = AttributionEnricher(
            store, settings.enrichment, internal_domain=settings.enrichment.internal_domain
        )
        self.enrichment_pool = EnrichmentWorkerPool(self.repository, self.enricher, settings.enrichment)

        self.cache = MetricsCacheLayer(store, settings.cache)
        self.query = MetricsQueryService(self.repository, self.cache)

        self.jobs: Dict[JobType, AggregationJob] = {
            JobType.DAILY: DailyAggregationJob(
                self.repository, store, settings.aggregation, on_completed=self._on_job_completed
            ),
            JobType.WEEKLY: WeeklyAggregationJob(
                self.repository, store, settings.aggregation, on_completed=self._on_job_completed
            ),
            JobType.MONTHLY: MonthlyAggregationJob(
                self.repository, store, settings.aggregation, on_completed=self._on_job_completed
            ),
        }

        self.realtime = RealtimeMetricsEngine(store, self.repository, settings.realtime)
        self.reconciler = RealtimeReconciler(self.realtime, self.repository)

        self.cancel_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._started = False

    @classmethod
    async def create(cls, settings: Settings, create_tables: bool = True) -> "AnalyticsPipeline":
        """Connect both stores and build the pipeline"""
        engine = await init_database(settings.database, create_tables=create_tables)
        try:
            store = await create_fast_store(settings)
        except Exception:
            await engine.dispose()
            raise
        return cls(settings, store, engine)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the buffer flusher, enrichment workers and periodic maintenance"""
        if self._started:
            return
        self._started = True
        self.cancel_event.clear()
        await self.buffer.start()
        if self.settings.ingestion.enable_enrichment:
            await self.enrichment_pool.start()

        self._schedule("dedup-sweep", self.settings.dedup.sweep_interval_seconds, self.sweep_duplicates)
        self._schedule("realtime-checkpoint", self.settings.realtime.checkpoint_interval_seconds, self.realtime.checkpoint)
        self._schedule(
            "realtime-reconcile",
            self.settings.realtime.reconciliation_interval_seconds,
            self._reconcile_and_clean,
        )
        logger.info("Analytics pipeline started", app_env=self.settings.app_env)

    async def stop(self) -> None:
        """
        Graceful shutdown: cancel in-flight aggregation at the next group
        boundary, flush the buffer, drain enrichment and write a final
        realtime checkpoint.
        """
        if not self._started:
            return
        self._started = False
        self.cancel_event.set()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.buffer.stop()
        await self.enrichment_pool.stop(drain=True, timeout=self.settings.ingestion.batch_timeout_seconds)
        try:
            await self.realtime.checkpoint()
        except TransientStoreError as e:
            logger.error("Final realtime checkpoint failed", error=str(e))
        logger.info("Analytics pipeline stopped")

    async def close(self) -> None:
        """Stop and release both stores"""
        await self.stop()
        await self.store.close()
        await self.engine.dispose()

    def _schedule(self, name: str, interval: float, work: Callable[[], Awaitable[Any]]) -> None:
        self._tasks.append(asyncio.create_task(self._periodic(name, interval, work), name=name))

    async def _periodic(self, name: str, interval: float, work: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await work()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Periodic task failed", task=name, error=str(e))

    # =========================================================================
    # HOOKS
    # =========================================================================

    async def _on_batch_flushed(self, batch: List[ValidatedEvent]) -> None:
        await self._on_events_written([(event.id, event.occurred_at) for event in batch])

    async def _on_rows_replayed(self, rows: List[Dict[str, Any]]) -> None:
        await self._on_events_written([(row["id"], row["occurred_at"]) for row in rows])

    async def _on_events_written(self, written: List[Tuple[uuid.UUID, datetime]]) -> None:
        if self.settings.ingestion.enable_enrichment:
            self.enrichment_pool.submit_many(event_id for event_id, _ in written)

        per_day = Tally(occurred_at.date().isoformat() for _, occurred_at in written)
        for day, count in per_day.items():
            await self.realtime.increment(EVENTS_INGESTED_METRIC, count, dimensions={"date": day})

    async def _on_job_completed(self, job_type: JobType, start: date, end: date) -> None:
        await self.cache.invalidate_period(job_type.value, start, end)

    # =========================================================================
    # PRODUCER ENTRY POINTS
    # =========================================================================

    async def submit_event(self, event: Union[EventIn, Mapping[str, Any]]) -> IngestResult:
        return await self.buffer.ingest(event)

    async def submit_events(self, events: Iterable[Union[EventIn, Mapping[str, Any]]]) -> List[IngestResult]:
        return await self.buffer.ingest_many(events)

    async def store_session_context(self, session_id: str, context: Dict[str, Any]) -> None:
        await self.enricher.store_session_context(session_id, context)

    # =========================================================================
    # DASHBOARD ENTRY POINTS
    # =========================================================================

    async def get_daily_metrics(self, dimension_key: str, start: date, end: date) -> MetricsResult:
        return await self.query.get_daily(dimension_key, start, end)

    async def get_weekly_metrics(self, dimension_key: str, start: date, end: date) -> MetricsResult:
        return await self.query.get_weekly(dimension_key, start, end)

    async def get_monthly_metrics(self, dimension_key: str, start: date, end: date) -> MetricsResult:
        return await self.query.get_monthly(dimension_key, start, end)

    async def get_realtime_value(self, key: str) -> MetricValue:
        return await self.realtime.get_value(key)

    # =========================================================================
    # ADMINISTRATIVE ENTRY POINTS
    # =========================================================================

    async def backfill(self, job_type: Union[JobType, str], start: date, end: date) -> List[JobResult]:
        """Recompute every period of one tier overlapping [start, end]"""
        if start > end:
            raise ValueError("start must not be after end")
        job = self.jobs[JobType(job_type)]
        return await job.backfill(start, end, cancel_event=self.cancel_event)

    async def force_flush(self) -> int:
        return await self.buffer.force_flush()

    async def invalidate_cache(self, pattern: str = "*") -> int:
        return await self.cache.invalidate(pattern)

    async def get_job_logs(self, **filters: Any) -> List[Dict[str, Any]]:
        return await self.repository.list_job_logs(**filters)

    async def reconcile_realtime_metric(self, key: str = "*") -> List[ReconcileResult]:
        return await self.reconciler.reconcile(key)

    async def replay_dead_letters(self) -> ReplayResult:
        return await self.dead_letters.replay(self.repository, on_replayed=self._on_rows_replayed)

    # =========================================================================
    # SCHEDULED RUNS
    # =========================================================================

    async def run_daily(self, day: Optional[date] = None) -> JobResult:
        """Aggregate one day, yesterday by default"""
        day = day or utcnow().date() - timedelta(days=1)
        return await self.jobs[JobType.DAILY].run(day, cancel_event=self.cancel_event)

    async def run_weekly(self, day: Optional[date] = None) -> JobResult:
        """Aggregate the week containing ``day``, last week by default"""
        day = day or utcnow().date() - timedelta(days=7)
        return await self.jobs[JobType.WEEKLY].run(day, cancel_event=self.cancel_event)

    async def run_monthly(self, day: Optional[date] = None) -> JobResult:
        """Aggregate the month containing ``day``, last month by default"""
        if day is None:
            today = utcnow().date()
            day, _ = month_bounds(*previous_month(today.year, today.month))
        return await self.jobs[JobType.MONTHLY].run(day, cancel_event=self.cancel_event)

    async def sweep_duplicates(self) -> SweepResult:
        return await self.dedup.sweep()

    async def _reconcile_and_clean(self) -> None:
        await self.reconciler.reconcile_all()
        await self.reconciler.clear_expired()

    async def run_maintenance(self) -> Dict[str, Any]:
        """
        One maintenance cycle: duplicate sweep, realtime reconciliation,
        expired checkpoint cleanup, checkpoint and stuck job reaping.
        """
        sweep = await self.sweep_duplicates()
        reconciled = await self.reconciler.reconcile_all()
        expired = await self.reconciler.clear_expired()
        checkpointed = await self.realtime.checkpoint()
        stuck_before = utcnow() - timedelta(seconds=self.settings.aggregation.stuck_job_seconds)
        reaped = await self.repository.reap_stuck_jobs(stuck_before)
        summary = {
            "duplicates_flagged": sweep.flagged,
            "realtime_reconciled": len(reconciled),
            "realtime_corrected": sum(1 for r in reconciled if r.corrected),
            "realtime_expired": expired,
            "realtime_checkpointed": checkpointed,
            "stuck_jobs_reaped": reaped,
        }
        logger.info("Maintenance cycle completed", **summary)
        return summary

    # =========================================================================
    # HEALTH
    # =========================================================================

    async def health(self) -> Dict[str, Any]:
        database = await check_database_health(self.engine)
        try:
            fast_store_ok = await self.store.ping()
        except TransientStoreError:
            fast_store_ok = False
        dedup = self.dedup.health()
        buffer = self.buffer.get_stats()

        status = "healthy"
        if database["status"] != "healthy":
            status = "unhealthy"
        elif not fast_store_ok or buffer.alert or dedup.status.value != "ok":
            status = "degraded"

        return {
            "status": status,
            "version": self.settings.version,
            "database": database,
            "fast_store": {"status": "healthy" if fast_store_ok else "unhealthy"},
            "dedup": {
                "status": dedup.status.value,
                "duplicate_rate": dedup.duplicate_rate,
                "circuit_state": dedup.circuit_state.value,
            },
            "buffer": {
                "pending": buffer.pending,
                "alert": buffer.alert,
                "dead_lettered_events": buffer.dead_lettered_events,
            },
            "enrichment": vars(self.enrichment_pool.get_stats()),
            "cache": self.cache.get_stats(),
        }
