"""
Deduplication Engine

Two layers of duplicate detection:

1. Fast path: an atomic set-if-absent of the event fingerprint (and the
   idempotency key, when present) in the fast store with a short TTL.
2. Sweep: a periodic scan of recently written events that groups them by
   fingerprint, keeps the earliest and flags the rest in place.

The fast path fails open behind a circuit breaker; anything it lets
through is caught by the sweep.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, List, Optional, Tuple

import structlog
from prometheus_client import Counter, Gauge

from event_pipeline.config.settings import DeduplicationSettings
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import DuplicateDetected, TransientStoreError
from event_pipeline.events import ValidatedEvent
from event_pipeline.stores.base import FastStore
from event_pipeline.timeutils import utcnow

logger = structlog.get_logger(__name__)

FINGERPRINT_PREFIX = "fingerprint:"
IDEMPOTENCY_PREFIX = "idempotency:"


# =============================================================================
# METRICS
# =============================================================================

DEDUP_CHECKS = Counter(
    "event_pipeline_dedup_checks_total",
    "Deduplication checks by outcome",
    ["outcome"],
)

SWEEP_FLAGGED = Counter(
    "event_pipeline_dedup_sweep_flagged_total",
    "Events flagged as duplicate by the durable sweep",
)

DUPLICATE_RATE = Gauge(
    "event_pipeline_duplicate_rate",
    "Duplicate rate over the rolling health window",
)


class HealthStatus(str, Enum):
    """Duplicate rate health"""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class DedupHealth:
    """Rolling duplicate-rate health signal"""
    status: HealthStatus
    duplicate_rate: float
    checked: int
    duplicates: int
    window_seconds: int
    circuit_state: CircuitState


@dataclass
class SweepResult:
    """Outcome of one durable sweep"""
    groups_scanned: int = 0
    flagged: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    flagged_ids: List[str] = field(default_factory=list)


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` consecutive failures and allows a
    single trial call once ``reset_seconds`` have elapsed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.reset_seconds:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def allow(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._opened_at is None or self.state == CircuitState.HALF_OPEN:
                logger.warning("Deduplication circuit opened", failures=self._failures)
            self._opened_at = self._clock()


class DeduplicationEngine:
    """
    Fingerprint-based duplicate detection with a durable sweep fallback.

    Example:
        engine = DeduplicationEngine(store, repository, settings.dedup)
        if await engine.check_and_mark(event):
            ...  # drop silently
    """

    def __init__(
        self,
        store: FastStore,
        repository: AnalyticsRepository,
        config: DeduplicationSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.repository = repository
        self.config = config
        self._clock = clock
        self.breaker = CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            reset_seconds=config.circuit_reset_seconds,
            clock=clock,
        )
        self._outcomes: Deque[Tuple[float, bool]] = deque()

    async def check_and_mark(self, event: ValidatedEvent) -> bool:
        """
        Record the event's identity and report whether it was already seen.

        Store failures never block ingestion: the event is treated as new.

        Returns:
            True when the event is a duplicate
        """
        if not self.config.enabled:
            return False

        if not self.breaker.allow():
            DEDUP_CHECKS.labels(outcome="bypassed").inc()
            return False

        try:
            await self._mark(event)
        except DuplicateDetected as signal:
            self.breaker.record_success()
            self._record(True)
            DEDUP_CHECKS.labels(outcome="duplicate").inc()
            logger.debug(
                "Duplicate event dropped",
                event_type=event.event_type.value,
                reason=signal.reason,
                fingerprint=signal.fingerprint[:12],
            )
            return True
        except TransientStoreError as e:
            self.breaker.record_failure()
            DEDUP_CHECKS.labels(outcome="store_error").inc()
            logger.warning("Fingerprint store unavailable, failing open", error=str(e))
            return False

        self.breaker.record_success()
        self._record(False)
        DEDUP_CHECKS.labels(outcome="unique").inc()
        return False

    async def _mark(self, event: ValidatedEvent) -> None:
        if event.idempotency_key:
            first = await self.store.set(
                IDEMPOTENCY_PREFIX + event.idempotency_key,
                str(event.id),
                ttl=self.config.idempotency_ttl_seconds,
                nx=True,
            )
            if not first:
                raise DuplicateDetected(event.idempotency_key, reason="idempotency_key")

        first = await self.store.set(
            FINGERPRINT_PREFIX + event.fingerprint,
            str(event.id),
            ttl=self.config.fingerprint_ttl_seconds,
            nx=True,
        )
        if not first:
            raise DuplicateDetected(event.fingerprint)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def _record(self, duplicate: bool) -> None:
        now = self._clock()
        self._outcomes.append((now, duplicate))
        self._trim(now)

    def _trim(self, now: float) -> None:
        horizon = now - self.config.health_window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def health(self) -> DedupHealth:
        """Duplicate rate over the rolling window"""
        self._trim(self._clock())
        checked = len(self._outcomes)
        duplicates = sum(1 for _, dup in self._outcomes if dup)
        rate = duplicates / checked if checked else 0.0
        DUPLICATE_RATE.set(rate)

        if rate >= self.config.critical_rate:
            status = HealthStatus.CRITICAL
        elif rate >= self.config.warning_rate:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.OK

        return DedupHealth(
            status=status,
            duplicate_rate=round(rate, 4),
            checked=checked,
            duplicates=duplicates,
            window_seconds=self.config.health_window_seconds,
            circuit_state=self.breaker.state,
        )

    # -------------------------------------------------------------------------
    # Durable sweep
    # -------------------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Flag duplicates the fast path missed.

        Scans events ingested within the lookback window, groups them by
        fingerprint with every stored event sharing it, keeps the earliest
        by (occurred_at, ingested_at, id) and flags the rest. Rows already
        flagged against the same survivor are not touched again, so
        re-running over a processed window changes nothing.
        """
        now = now or utcnow()
        window_start = now - timedelta(seconds=self.config.sweep_lookback_seconds)
        window_end = now - timedelta(seconds=self.config.sweep_settle_seconds)
        result = SweepResult(window_start=window_start, window_end=window_end)

        groups = await self.repository.fetch_fingerprint_groups(window_start, window_end)
        result.groups_scanned = len(groups)

        flags = []
        for fingerprint, rows in groups.items():
            ordered = sorted(rows, key=lambda r: (r["occurred_at"], r["ingested_at"], str(r["id"])))
            keeper = ordered[0]
            for row in ordered[1:]:
                if row["is_duplicate"] and row["duplicate_of"] == keeper["id"]:
                    continue
                flags.append((row["id"], keeper["id"]))

        if flags:
            await self.repository.flag_duplicates(flags, flagged_at=now)
            SWEEP_FLAGGED.inc(len(flags))
            result.flagged = len(flags)
            result.flagged_ids = [str(event_id) for event_id, _ in flags]

        logger.info(
            "Deduplication sweep completed",
            groups_scanned=result.groups_scanned,
            flagged=result.flagged,
        )
        return result
