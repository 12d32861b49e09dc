"""
Analytics Repository

All durable-store reads and writes used by the pipeline. Every call runs
in its own transaction and under the configured statement timeout; driver
failures surface as TransientStoreError.
"""

import uuid
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from event_pipeline.stores.base import with_timeout
from event_pipeline.timeutils import utcnow
from .connection import create_session_factory, session_scope
from .models import (
    AggregationJobLog,
    Base,
    DailyMetric,
    EventAttribution,
    JobStatus,
    MonthlyMetric,
    RawEvent,
    RealtimeMetricValue,
    WeeklyMetric,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def row_to_dict(obj: Base) -> Dict[str, Any]:
    """Column values of an ORM instance"""
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


class AnalyticsRepository:
    """
    Durable store access for events, metric tiers, realtime checkpoints and
    job logs.

    Example:
        repo = AnalyticsRepository(engine, timeout=10.0)
        await repo.insert_events([event.to_row()])
    """

    def __init__(self, engine: AsyncEngine, timeout: float = 10.0):
        self.engine = engine
        self.timeout = timeout
        self._factory: async_sessionmaker[AsyncSession] = create_session_factory(engine)
        self._dialect = engine.dialect.name

    async def _run(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _transaction() -> T:
            async with session_scope(self._factory) as session:
                return await work(session)

        return await with_timeout(
            _transaction(), store="database", operation=operation, timeout=self.timeout
        )

    def _insert(self, model: Type[Base]):
        if self._dialect == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    def _upsert_statement(self, model: Type[Base], rows: List[Dict[str, Any]], conflict: Sequence[str]):
        stmt = self._insert(model).values(rows)
        update_columns = [key for key in rows[0] if key not in conflict and key != "id"]
        return stmt.on_conflict_do_update(
            index_elements=list(conflict),
            set_={key: getattr(stmt.excluded, key) for key in update_columns},
        )

    async def ping(self) -> bool:
        async def _work(session: AsyncSession) -> bool:
            await session.execute(select(1))
            return True

        return await self._run("ping", _work)

    # =========================================================================
    # RAW EVENTS
    # =========================================================================

    async def insert_events(self, rows: List[Dict[str, Any]]) -> int:
        """
        Bulk insert raw events.

        Rows whose id already exists are skipped so a replayed batch cannot
        create duplicates.
        """
        if not rows:
            return 0

        async def _work(session: AsyncSession) -> int:
            stmt = self._insert(RawEvent).values(rows).on_conflict_do_nothing(index_elements=["id"])
            result = await session.execute(stmt)
            return result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(rows)

        return await self._run("insert_events", _work)

    async def get_event(self, event_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        async def _work(session: AsyncSession) -> Optional[Dict[str, Any]]:
            event = await session.get(RawEvent, event_id)
            return row_to_dict(event) if event is not None else None

        return await self._run("get_event", _work)

    async def upsert_attribution(self, row: Dict[str, Any]) -> None:
        async def _work(session: AsyncSession) -> None:
            await session.execute(self._upsert_statement(EventAttribution, [row], ["event_id"]))

        await self._run("upsert_attribution", _work)

    async def get_attribution(self, event_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        async def _work(session: AsyncSession) -> Optional[Dict[str, Any]]:
            attribution = await session.get(EventAttribution, event_id)
            return row_to_dict(attribution) if attribution is not None else None

        return await self._run("get_attribution", _work)

    async def list_events(self, **filters: Any) -> List[Dict[str, Any]]:
        """Events matching column equality filters, oldest first"""
        async def _work(session: AsyncSession) -> List[Dict[str, Any]]:
            query = select(RawEvent).order_by(RawEvent.occurred_at, RawEvent.ingested_at)
            for column, value in filters.items():
                query = query.where(getattr(RawEvent, column) == value)
            result = await session.execute(query)
            return [row_to_dict(event) for event in result.scalars()]

        return await self._run("list_events", _work)

    async def count_events(
        self,
        start: datetime,
        end: datetime,
        event_type: Optional[str] = None,
        include_duplicates: bool = False,
    ) -> int:
        async def _work(session: AsyncSession) -> int:
            query = select(func.count(RawEvent.id)).where(
                RawEvent.occurred_at >= start, RawEvent.occurred_at < end
            )
            if event_type:
                query = query.where(RawEvent.event_type == event_type)
            if not include_duplicates:
                query = query.where(RawEvent.is_duplicate.is_(False))
            return int((await session.execute(query)).scalar_one())

        return await self._run("count_events", _work)

    # =========================================================================
    # DEDUPLICATION SWEEP
    # =========================================================================

    async def fetch_fingerprint_groups(
        self, ingested_since: datetime, ingested_until: datetime
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Every stored event sharing a fingerprint with an event ingested in
        the window, grouped by fingerprint. Singletons are omitted.
        """
        async def _work(session: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
            recent = (
                select(RawEvent.fingerprint)
                .where(RawEvent.ingested_at >= ingested_since, RawEvent.ingested_at < ingested_until)
                .distinct()
            )
            repeated = (
                select(RawEvent.fingerprint)
                .where(RawEvent.fingerprint.in_(recent))
                .group_by(RawEvent.fingerprint)
                .having(func.count(RawEvent.id) > 1)
            )
            result = await session.execute(
                select(
                    RawEvent.id,
                    RawEvent.fingerprint,
                    RawEvent.occurred_at,
                    RawEvent.ingested_at,
                    RawEvent.is_duplicate,
                    RawEvent.duplicate_of,
                ).where(RawEvent.fingerprint.in_(repeated))
            )
            groups: Dict[str, List[Dict[str, Any]]] = {}
            for row in result.mappings():
                groups.setdefault(row["fingerprint"], []).append(dict(row))
            return groups

        return await self._run("fetch_fingerprint_groups", _work)

    async def flag_duplicates(self, flags: Iterable[Tuple[uuid.UUID, uuid.UUID]], flagged_at: datetime) -> int:
        """Mark (event_id, duplicate_of) pairs as duplicates"""
        flags = list(flags)
        if not flags:
            return 0

        async def _work(session: AsyncSession) -> int:
            for event_id, original_id in flags:
                await session.execute(
                    update(RawEvent)
                    .where(RawEvent.id == event_id)
                    .values(is_duplicate=True, duplicate_of=original_id, flagged_at=flagged_at)
                )
            return len(flags)

        return await self._run("flag_duplicates", _work)

    # =========================================================================
    # AGGREGATION INPUTS
    # =========================================================================

    async def fetch_events_for_window(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Non-duplicate events in [start, end) with their attribution source"""
        async def _work(session: AsyncSession) -> List[Dict[str, Any]]:
            query = (
                select(
                    RawEvent.id,
                    RawEvent.event_type,
                    RawEvent.actor_id,
                    RawEvent.session_id,
                    RawEvent.dimension_key,
                    RawEvent.props_json,
                    EventAttribution.referrer_category,
                    EventAttribution.utm_source,
                )
                .outerjoin(EventAttribution, EventAttribution.event_id == RawEvent.id)
                .where(
                    RawEvent.occurred_at >= start,
                    RawEvent.occurred_at < end,
                    RawEvent.is_duplicate.is_(False),
                )
                .order_by(RawEvent.occurred_at, RawEvent.id)
            )
            result = await session.execute(query)
            return [dict(row) for row in result.mappings()]

        return await self._run("fetch_events_for_window", _work)

    async def fetch_daily_rows(
        self, start: date, end: date, dimension_key: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """DailyMetric rows with start <= metric_date <= end"""
        async def _work(session: AsyncSession) -> List[Dict[str, Any]]:
            query = (
                select(DailyMetric)
                .where(DailyMetric.metric_date >= start, DailyMetric.metric_date <= end)
                .order_by(DailyMetric.metric_date, DailyMetric.dimension_key)
            )
            if dimension_key is not None:
                query = query.where(DailyMetric.dimension_key == dimension_key)
            result = await session.execute(query)
            return [row_to_dict(row) for row in result.scalars()]

        return await self._run("fetch_daily_rows", _work)

    async def fetch_weekly_rows(
        self, start: date, end: date, dimension_key: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """WeeklyMetric rows whose week starts within [start, end]"""
        async def _work(session: AsyncSession) -> List[Dict[str, Any]]:
            query = (
                select(WeeklyMetric)
                .where(WeeklyMetric.week_start >= start, WeeklyMetric.week_start <= end)
                .order_by(WeeklyMetric.week_start, WeeklyMetric.dimension_key)
            )
            if dimension_key is not None:
                query = query.where(WeeklyMetric.dimension_key == dimension_key)
            result = await session.execute(query)
            return [row_to_dict(row) for row in result.scalars()]

        return await self._run("fetch_weekly_rows", _work)

    async def fetch_monthly_rows(
        self, start: date, end: date, dimension_key: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """MonthlyMetric rows whose month starts within [start, end]"""
        async def _work(session: AsyncSession) -> List[Dict[str, Any]]:
            query = (
                select(MonthlyMetric)
                .where(MonthlyMetric.month_start >= start, MonthlyMetric.month_start <= end)
                .order_by(MonthlyMetric.month_start, MonthlyMetric.dimension_key)
            )
            if dimension_key is not None:
                query = query.where(MonthlyMetric.dimension_key == dimension_key)
            result = await session.execute(query)
            return [row_to_dict(row) for row in result.scalars()]

        return await self._run("fetch_monthly_rows", _work)

    async def existing_dimension_keys(self, model: Type[Base], **period: Any) -> List[str]:
        """Dimension keys already materialized for a period of a metric tier"""
        async def _work(session: AsyncSession) -> List[str]:
            query = select(model.dimension_key)
            for column, value in period.items():
                query = query.where(getattr(model, column) == value)
            result = await session.execute(query)
            return list(result.scalars())

        return await self._run("existing_dimension_keys", _work)

    async def upsert_metric_row(self, model: Type[Base], row: Dict[str, Any], conflict: Sequence[str]) -> None:
        """Insert or overwrite one metric row in its own transaction"""
        async def _work(session: AsyncSession) -> None:
            await session.execute(self._upsert_statement(model, [row], conflict))

        await self._run(f"upsert_{model.__tablename__}", _work)

    # =========================================================================
    # REALTIME CHECKPOINTS
    # =========================================================================

    async def upsert_realtime_values(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0

        async def _work(session: AsyncSession) -> int:
            for row in rows:
                await session.execute(self._upsert_statement(RealtimeMetricValue, [row], ["key"]))
            return len(rows)

        return await self._run("upsert_realtime_values", _work)

    async def get_realtime_values(self, keys: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not keys:
            return {}

        async def _work(session: AsyncSession) -> Dict[str, Dict[str, Any]]:
            result = await session.execute(
                select(RealtimeMetricValue).where(RealtimeMetricValue.key.in_(list(keys)))
            )
            return {row.key: row_to_dict(row) for row in result.scalars()}

        return await self._run("get_realtime_values", _work)

    async def list_realtime_keys(self, prefix: str = "") -> List[str]:
        async def _work(session: AsyncSession) -> List[str]:
            query = select(RealtimeMetricValue.key).order_by(RealtimeMetricValue.key)
            if prefix:
                query = query.where(RealtimeMetricValue.key.startswith(prefix))
            return list((await session.execute(query)).scalars())

        return await self._run("list_realtime_keys", _work)

    async def delete_expired_realtime(self, now: datetime) -> int:
        async def _work(session: AsyncSession) -> int:
            result = await session.execute(
                delete(RealtimeMetricValue).where(
                    RealtimeMetricValue.expires_at.is_not(None),
                    RealtimeMetricValue.expires_at < now,
                )
            )
            return result.rowcount or 0

        return await self._run("delete_expired_realtime", _work)

    # =========================================================================
    # JOB LOGS
    # =========================================================================

    async def create_job_log(self, job_type: str, period_start: date, period_end: date) -> uuid.UUID:
        async def _work(session: AsyncSession) -> uuid.UUID:
            log = AggregationJobLog(
                id=uuid.uuid4(),
                job_type=job_type,
                period_start=period_start,
                period_end=period_end,
                started_at=utcnow(),
                status=JobStatus.RUNNING.value,
                details={},
            )
            session.add(log)
            return log.id

        return await self._run("create_job_log", _work)

    async def finalize_job_log(
        self,
        log_id: uuid.UUID,
        status: JobStatus,
        records_processed: int,
        errors_count: int,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Finalize a RUNNING log; already-completed logs are left untouched"""
        async def _work(session: AsyncSession) -> bool:
            result = await session.execute(
                update(AggregationJobLog)
                .where(AggregationJobLog.id == log_id, AggregationJobLog.completed_at.is_(None))
                .values(
                    status=status.value,
                    completed_at=utcnow(),
                    records_processed=records_processed,
                    errors_count=errors_count,
                    error_message=error_message,
                    details=details or {},
                )
            )
            return bool(result.rowcount)

        return await self._run("finalize_job_log", _work)

    async def list_job_logs(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Job logs, newest first"""
        async def _work(session: AsyncSession) -> List[Dict[str, Any]]:
            query = select(AggregationJobLog)
            if job_type:
                query = query.where(AggregationJobLog.job_type == job_type)
            if status:
                query = query.where(AggregationJobLog.status == status)
            if period_start:
                query = query.where(AggregationJobLog.period_end >= period_start)
            if period_end:
                query = query.where(AggregationJobLog.period_start <= period_end)
            query = query.order_by(AggregationJobLog.started_at.desc()).limit(limit)
            result = await session.execute(query)
            return [row_to_dict(log) for log in result.scalars()]

        return await self._run("list_job_logs", _work)

    async def reap_stuck_jobs(self, started_before: datetime) -> int:
        """Finalize RUNNING logs older than the threshold as FAILED"""
        async def _work(session: AsyncSession) -> int:
            result = await session.execute(
                update(AggregationJobLog)
                .where(
                    AggregationJobLog.status == JobStatus.RUNNING.value,
                    AggregationJobLog.completed_at.is_(None),
                    AggregationJobLog.started_at < started_before,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    completed_at=utcnow(),
                    error_message="Job exceeded stuck threshold without completing",
                )
            )
            return result.rowcount or 0

        return await self._run("reap_stuck_jobs", _work)
