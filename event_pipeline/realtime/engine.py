"""
Realtime Metrics Engine

Counters, gauges, histograms and sliding-window rates kept in the fast
store for sub-second reads, with periodic checkpoints to the durable store
for crash recovery.

Key layout: ``metric:{kind}:{name}`` optionally followed by
``:{dim1}={v1}|{dim2}={v2}`` with dimensions sorted by name.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import structlog

from event_pipeline.config.settings import RealtimeSettings
from event_pipeline.database.models import MetricKind
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import TransientStoreError
from event_pipeline.stores.base import FastStore
from event_pipeline.timeutils import utcnow

logger = structlog.get_logger(__name__)

METRIC_PREFIX = "metric:"
DIRTY_SET_KEY = "realtime:dirty"
RATE_WINDOW_PREFIX = "realtime:window:"
PERCENTILES = (50, 95, 99)


def build_metric_key(kind: MetricKind, name: str, dimensions: Optional[Mapping[str, Any]] = None) -> str:
    """Deterministic fast-store key for a metric and its dimensions"""
    for token in [name, *(dimensions or {}).keys()]:
        if not token or any(ch in token for ch in ":|="):
            raise ValueError(f"Invalid metric name or dimension: {token!r}")
    key = f"{METRIC_PREFIX}{kind.value}:{name}"
    if dimensions:
        folded = "|".join(f"{k}={dimensions[k]}" for k in sorted(dimensions))
        key = f"{key}:{folded}"
    return key


def parse_metric_key(key: str) -> Tuple[MetricKind, str, Dict[str, str]]:
    """Inverse of build_metric_key"""
    if not key.startswith(METRIC_PREFIX):
        raise ValueError(f"Not a metric key: {key!r}")
    parts = key[len(METRIC_PREFIX):].split(":", 2)
    if len(parts) < 2:
        raise ValueError(f"Malformed metric key: {key!r}")
    kind = MetricKind(parts[0])
    dimensions: Dict[str, str] = {}
    if len(parts) == 3 and parts[2]:
        for pair in parts[2].split("|"):
            name, _, value = pair.partition("=")
            dimensions[name] = value
    return kind, parts[1], dimensions


def histogram_stats(values: List[float]) -> Dict[str, float]:
    """Summary statistics with p50/p95/p99"""
    if not values:
        return {"count": 0, "min": 0.0, "max": 0.0, "mean": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0}
    arr = np.asarray(values, dtype=float)
    stats = {
        "count": int(arr.size),
        "min": float(arr.min()),
        "max": float(arr.max()),
        "mean": round(float(arr.mean()), 6),
    }
    for pct, value in zip(PERCENTILES, np.percentile(arr, PERCENTILES)):
        stats[f"p{pct}"] = round(float(value), 6)
    return stats


@dataclass
class MetricValue:
    """A realtime read result"""
    key: str
    kind: MetricKind
    value: float
    source: str
    stats: Dict[str, float] = field(default_factory=dict)


@dataclass
class Snapshot:
    """Raw fast-store state of one metric"""
    value: float
    samples: Optional[Any] = None


class RealtimeMetricsEngine:
    """
    Fast-store realtime metrics with durable checkpoints.

    Example:
        engine = RealtimeMetricsEngine(store, repository, settings.realtime)
        await engine.increment("events_ingested", dimensions={"date": "2024-01-15"})
        value = await engine.get_value("metric:counter:events_ingested:date=2024-01-15")
    """

    def __init__(
        self,
        store: FastStore,
        repository: AnalyticsRepository,
        config: RealtimeSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.repository = repository
        self.config = config
        self._clock = clock

    def _ttl(self, ttl: Optional[int]) -> int:
        return ttl if ttl is not None else self.config.default_ttl_seconds

    async def _touch(self, key: str, ttl: Optional[int]) -> None:
        await self.store.expire(key, self._ttl(ttl))
        await self.store.sadd(DIRTY_SET_KEY, key)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def increment(
        self,
        name: str,
        amount: float = 1.0,
        dimensions: Optional[Mapping[str, Any]] = None,
        ttl: Optional[int] = None,
    ) -> float:
        """Increment a counter; counters only move forward"""
        if amount < 0:
            raise ValueError("Counter increments must be non-negative")
        key = build_metric_key(MetricKind.COUNTER, name, dimensions)
        value = await self.store.incrbyfloat(key, amount)
        await self._touch(key, ttl)
        return value

    async def set_gauge(
        self,
        name: str,
        value: float,
        dimensions: Optional[Mapping[str, Any]] = None,
        ttl: Optional[int] = None,
    ) -> None:
        key = build_metric_key(MetricKind.GAUGE, name, dimensions)
        await self.store.set(key, repr(float(value)), ttl=self._ttl(ttl))
        await self.store.sadd(DIRTY_SET_KEY, key)

    async def record_histogram(
        self,
        name: str,
        value: float,
        dimensions: Optional[Mapping[str, Any]] = None,
        ttl: Optional[int] = None,
    ) -> None:
        """Record a sample, keeping only the most recent samples"""
        key = build_metric_key(MetricKind.HISTOGRAM, name, dimensions)
        now = self._clock()
        await self.store.zadd(key, f"{now}:{uuid.uuid4().hex[:8]}:{float(value)!r}", now)
        await self.store.ztrim(key, self.config.histogram_max_samples)
        await self._touch(key, ttl)

    async def record_rate(
        self,
        name: str,
        dimensions: Optional[Mapping[str, Any]] = None,
        window_seconds: Optional[int] = None,
        ttl: Optional[int] = None,
    ) -> float:
        """
        Record one occurrence and return the rate in events per second over
        the sliding window.
        """
        key = build_metric_key(MetricKind.RATE, name, dimensions)
        window = window_seconds or self.config.default_rate_window_seconds
        now = self._clock()
        await self.store.zadd(key, f"{now}:{uuid.uuid4().hex[:8]}", now)
        await self.store.zremrangebyscore(key, float("-inf"), now - window)
        await self.store.set(f"{RATE_WINDOW_PREFIX}{key}", str(window), ttl=self._ttl(ttl))
        await self._touch(key, ttl)
        return await self.store.zcard(key) / window

    # -------------------------------------------------------------------------
    # Fast-store snapshots
    # -------------------------------------------------------------------------

    async def _rate_window(self, key: str) -> int:
        """Window a rate was recorded with, falling back to the configured default"""
        raw = await self.store.get(f"{RATE_WINDOW_PREFIX}{key}")
        return int(raw) if raw is not None else self.config.default_rate_window_seconds

    async def snapshot(self, key: str) -> Optional[Snapshot]:
        """Current fast-store state of a metric, None when absent"""
        kind, _, _ = parse_metric_key(key)
        if kind in (MetricKind.COUNTER, MetricKind.GAUGE):
            raw = await self.store.get(key)
            return Snapshot(value=float(raw)) if raw is not None else None

        entries = await self.store.zrangebyscore(key, float("-inf"), float("inf"))
        if not entries:
            return None

        if kind == MetricKind.HISTOGRAM:
            samples = [[score, float(member.rsplit(":", 1)[1])] for member, score in entries]
            return Snapshot(value=float(len(samples)), samples=samples)

        window = await self._rate_window(key)
        horizon = self._clock() - window
        timestamps = [score for _, score in entries if score > horizon]
        return Snapshot(value=len(timestamps) / window, samples={"window": window, "timestamps": timestamps})

    async def restore(self, key: str, value: float, samples: Optional[Any], ttl: Optional[int]) -> None:
        """Overwrite the fast-store state of a metric"""
        kind, _, _ = parse_metric_key(key)
        await self.store.delete(key)
        if kind in (MetricKind.COUNTER, MetricKind.GAUGE):
            await self.store.set(key, repr(float(value)), ttl=self._ttl(ttl))
            return
        if kind == MetricKind.HISTOGRAM:
            for index, (ts, sample_value) in enumerate(samples or []):
                await self.store.zadd(key, f"{ts}:r{index}:{float(sample_value)!r}", ts)
        else:
            window = None
            if isinstance(samples, dict):
                window = samples.get("window")
                samples = samples.get("timestamps")
            for index, ts in enumerate(samples or []):
                await self.store.zadd(key, f"{ts}:r{index}", ts)
            if window:
                await self.store.set(f"{RATE_WINDOW_PREFIX}{key}", str(int(window)), ttl=self._ttl(ttl))
        await self.store.expire(key, self._ttl(ttl))

    def _to_value(self, key: str, kind: MetricKind, value: float, samples: Optional[Any], source: str) -> MetricValue:
        stats = {}
        if kind == MetricKind.HISTOGRAM:
            stats = histogram_stats([s[1] for s in samples or []])
        return MetricValue(key=key, kind=kind, value=value, source=source, stats=stats)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_value(self, key: str) -> MetricValue:
        """
        Read a metric: fast store first, then the durable checkpoint, then zero.
        """
        kind, _, _ = parse_metric_key(key)
        try:
            snap = await self.snapshot(key)
        except TransientStoreError as e:
            logger.warning("Fast store read failed, using checkpoint", key=key, error=str(e))
            snap = None
        if snap is not None:
            return self._to_value(key, kind, snap.value, snap.samples, "fast")

        rows = await self.repository.get_realtime_values([key])
        row = rows.get(key)
        if row is not None and (row["expires_at"] is None or row["expires_at"] > utcnow()):
            return self._to_value(key, kind, row["value"], row["samples"], "durable")

        return self._to_value(key, kind, 0.0, None, "default")

    async def get_bulk_values(self, keys: List[str]) -> Dict[str, MetricValue]:
        return {key: await self.get_value(key) for key in keys}

    # -------------------------------------------------------------------------
    # Checkpointing
    # -------------------------------------------------------------------------

    def checkpoint_row(self, key: str, snap: Snapshot, ttl_remaining: Optional[float]) -> Dict[str, Any]:
        kind, _, _ = parse_metric_key(key)
        now = utcnow()
        return {
            "key": key,
            "kind": kind.value,
            "value": snap.value,
            "samples": snap.samples,
            "ttl_seconds": int(ttl_remaining) if ttl_remaining is not None else None,
            "expires_at": now + timedelta(seconds=ttl_remaining) if ttl_remaining is not None else None,
            "last_updated": now,
        }

    async def checkpoint(self) -> int:
        """Persist every metric changed since the last checkpoint"""
        dirty = sorted(await self.store.smembers(DIRTY_SET_KEY))
        if not dirty:
            return 0

        rows = []
        for key in dirty:
            snap = await self.snapshot(key)
            if snap is None:
                continue
            rows.append(self.checkpoint_row(key, snap, await self.store.ttl(key)))

        await self.repository.upsert_realtime_values(rows)
        await self.store.srem(DIRTY_SET_KEY, *dirty)
        logger.debug("Realtime checkpoint written", metrics=len(rows))
        return len(rows)

    async def list_keys(self) -> List[str]:
        """Every metric key known to either store"""
        fast = await self.store.keys(f"{METRIC_PREFIX}*")
        durable = await self.repository.list_realtime_keys(METRIC_PREFIX)
        return sorted(set(fast) | set(durable))
