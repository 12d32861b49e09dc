"""
Realtime Metrics Reconciler

Corrects drift between the fast store and durable data. Metrics with a
registered source-of-truth resolver are recomputed from durable data and
both stores are overwritten with the true value. Other metrics are
converged between the two stores: the fast value is checkpointed when
present, and restored from the checkpoint when the fast store lost it.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter

from event_pipeline.database.models import MetricKind
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.timeutils import day_bounds, utcnow
from .engine import RealtimeMetricsEngine, Snapshot, parse_metric_key

logger = structlog.get_logger(__name__)

DRIFT_CORRECTIONS = Counter(
    "event_pipeline_realtime_drift_corrections_total",
    "Realtime metrics corrected by reconciliation",
    ["metric"],
)

DRIFT_TOLERANCE = 1e-9

Resolver = Callable[[Dict[str, str]], Awaitable[float]]


@dataclass
class ReconcileResult:
    key: str
    before: Optional[float]
    after: Optional[float]
    corrected: bool
    action: str


class RealtimeReconciler:
    """
    Periodic drift correction for realtime metrics.

    Example:
        reconciler = RealtimeReconciler(engine, repository)
        reconciler.register("signups", count_signups)
        await reconciler.reconcile("*")
    """

    def __init__(self, engine: RealtimeMetricsEngine, repository: AnalyticsRepository):
        self.engine = engine
        self.repository = repository
        self._resolvers: Dict[str, Resolver] = {}
        self.register("events_ingested", self._count_events_ingested)

    def register(self, metric_name: str, resolver: Resolver) -> None:
        """Register the source-of-truth resolver for a counter or gauge name"""
        self._resolvers[metric_name] = resolver

    async def _count_events_ingested(self, dimensions: Dict[str, str]) -> float:
        """Non-duplicate durable events, optionally for one ``date`` and ``event_type``"""
        if "date" in dimensions:
            start, end = day_bounds(date.fromisoformat(dimensions["date"]))
        else:
            start, end = datetime.min, datetime.max
        return float(
            await self.repository.count_events(start, end, event_type=dimensions.get("event_type"))
        )

    async def reconcile(self, key: str) -> List[ReconcileResult]:
        """Reconcile one metric key, or every known key with ``"*"``"""
        if key == "*":
            return await self.reconcile_all()
        return [await self.reconcile_key(key)]

    async def reconcile_all(self) -> List[ReconcileResult]:
        results = []
        for key in await self.engine.list_keys():
            try:
                results.append(await self.reconcile_key(key))
            except ValueError as e:
                logger.warning("Skipping unparseable metric key", key=key, error=str(e))
        corrected = sum(1 for r in results if r.corrected)
        logger.info("Realtime reconciliation completed", metrics=len(results), corrected=corrected)
        return results

    async def reconcile_key(self, key: str) -> ReconcileResult:
        kind, name, dimensions = parse_metric_key(key)
        snap = await self.engine.snapshot(key)
        before = snap.value if snap is not None else None
        ttl = await self.engine.store.ttl(key) if snap is not None else None

        resolver = self._resolvers.get(name)
        if resolver is not None and kind in (MetricKind.COUNTER, MetricKind.GAUGE):
            truth = await resolver(dimensions)
            corrected = before is None or abs(truth - before) > DRIFT_TOLERANCE
            if corrected:
                await self.engine.restore(key, truth, None, int(ttl) if ttl else None)
                DRIFT_CORRECTIONS.labels(metric=name).inc()
                logger.info("Realtime drift corrected", key=key, before=before, after=truth)
            ttl = await self.engine.store.ttl(key)
            await self.repository.upsert_realtime_values(
                [self.engine.checkpoint_row(key, Snapshot(value=truth), ttl)]
            )
            return ReconcileResult(key, before, truth, corrected, "resolved")

        if snap is not None:
            await self.repository.upsert_realtime_values([self.engine.checkpoint_row(key, snap, ttl)])
            return ReconcileResult(key, before, before, False, "checkpointed")

        row = (await self.repository.get_realtime_values([key])).get(key)
        if row is None or (row["expires_at"] is not None and row["expires_at"] <= utcnow()):
            return ReconcileResult(key, None, None, False, "absent")

        remaining = None
        if row["expires_at"] is not None:
            remaining = int((row["expires_at"] - utcnow()).total_seconds()) or 1
        await self.engine.restore(key, row["value"], row["samples"], remaining)
        DRIFT_CORRECTIONS.labels(metric=name).inc()
        logger.info("Realtime metric restored from checkpoint", key=key, value=row["value"])
        return ReconcileResult(key, None, row["value"], True, "restored")

    async def clear_expired(self) -> int:
        """Delete checkpoints whose TTL has passed"""
        removed = await self.repository.delete_expired_realtime(utcnow())
        if removed:
            logger.info("Expired realtime metrics cleared", removed=removed)
        return removed
