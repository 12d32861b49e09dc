"""
Ingestion Buffer

Micro-batching front door of the pipeline. Accepted events are validated,
deduplicated and appended to an in-process batch that is flushed to the
durable store when either the batch size or the batch timeout is reached.

Delivery trade-off: events buffered in memory are lost if the process
crashes before the next flush. That window is bounded by the batch timeout.
A graceful stop always performs a final flush.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

import structlog
from prometheus_client import Counter, Gauge, Histogram

from event_pipeline.config.settings import IngestionSettings
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import EventValidationError, TransientStoreError
from event_pipeline.events import EventIn, ValidatedEvent, validate_event
from event_pipeline.timeutils import utcnow
from .dead_letter import DeadLetterStore
from .dedup import DeduplicationEngine

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_INGESTED = Counter(
    "event_pipeline_events_ingested_total",
    "Events submitted to the ingestion buffer by outcome",
    ["outcome"],
)

BATCH_FLUSHES = Counter(
    "event_pipeline_batch_flushes_total",
    "Batch flush attempts by outcome",
    ["outcome"],
)

FLUSH_LATENCY = Histogram(
    "event_pipeline_flush_seconds",
    "Time spent writing a batch to the durable store",
)

BUFFER_DEPTH = Gauge(
    "event_pipeline_buffer_depth",
    "Events waiting in the ingestion buffer",
)


@dataclass
class IngestResult:
    """Per-event result returned to producers"""
    accepted: bool
    duplicate: bool = False
    event_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class BufferStats:
    """Point-in-time buffer statistics"""
    pending: int
    flush_in_progress: bool
    running: bool
    total_accepted: int
    total_duplicates: int
    total_rejected: int
    total_flushed: int
    flush_retries: int
    dead_lettered_batches: int
    dead_lettered_events: int
    alert: bool
    last_flush_at: Optional[datetime]
    dedup_circuit: str


FlushCallback = Callable[[List[ValidatedEvent]], Union[Awaitable[None], None]]


class IngestionBuffer:
    """
    Size-or-time micro-batching buffer.

    The pending batch is guarded by a lock; a flush swaps it for an empty
    list under that lock, so events appended while a flush is writing land
    in the next batch.

    Example:
        buffer = IngestionBuffer(repository, dedup, settings.ingestion, dead_letters)
        await buffer.start()
        result = await buffer.ingest({"event_type": "post_viewed", ...})
        await buffer.stop()
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        dedup: DeduplicationEngine,
        config: IngestionSettings,
        dead_letters: DeadLetterStore,
        on_flushed: Optional[FlushCallback] = None,
    ):
        self.repository = repository
        self.dedup = dedup
        self.config = config
        self.dead_letters = dead_letters
        self._on_flushed = on_flushed

        self._pending: List[ValidatedEvent] = []
        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._accepted = 0
        self._duplicates = 0
        self._rejected = 0
        self._flushed = 0
        self._retries = 0
        self._dead_batches = 0
        self._dead_events = 0
        self._alert = False
        self._last_flush_at: Optional[datetime] = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    async def ingest(self, event: Union[EventIn, Mapping[str, Any]]) -> IngestResult:
        """
        Validate, deduplicate and buffer one event.

        Never raises: validation problems are returned in the result and
        duplicates are reported with ``duplicate=True``.
        """
        try:
            validated = validate_event(
                event,
                max_future_skew_seconds=self.config.max_future_skew_seconds,
                retention_floor_days=self.config.retention_floor_days,
            )
        except EventValidationError as e:
            self._rejected += 1
            EVENTS_INGESTED.labels(outcome="rejected").inc()
            logger.info("Event rejected", errors=e.errors)
            return IngestResult(accepted=False, errors=e.errors)

        if await self.dedup.check_and_mark(validated):
            self._duplicates += 1
            EVENTS_INGESTED.labels(outcome="duplicate").inc()
            return IngestResult(accepted=True, duplicate=True)

        async with self._lock:
            self._pending.append(validated)
            depth = len(self._pending)
        self._accepted += 1
        EVENTS_INGESTED.labels(outcome="accepted").inc()
        BUFFER_DEPTH.set(depth)

        if depth >= self.config.batch_size:
            if self._running:
                self._wake.set()
            else:
                await self.flush()

        return IngestResult(accepted=True, event_id=str(validated.id))

    async def ingest_many(self, events: Iterable[Union[EventIn, Mapping[str, Any]]]) -> List[IngestResult]:
        return [await self.ingest(event) for event in events]

    async def flush(self) -> int:
        """
        Write the current batch to the durable store.

        Returns:
            Number of events durably written (0 when dead-lettered)
        """
        async with self._flush_lock:
            async with self._lock:
                batch, self._pending = self._pending, []
            BUFFER_DEPTH.set(len(self._pending))
            if not batch:
                return 0
            return await self._write_batch(batch)

    async def force_flush(self) -> int:
        return await self.flush()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="ingestion-buffer-flusher")
        logger.info(
            "Ingestion buffer started",
            batch_size=self.config.batch_size,
            batch_timeout_seconds=self.config.batch_timeout_seconds,
        )

    async def stop(self) -> None:
        """Stop the timer loop and perform the final flush"""
        self._running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        written = await self.flush()
        logger.info("Ingestion buffer stopped", final_flush=written)

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.batch_timeout_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if not self._running:
                break
            try:
                await self.flush()
            except Exception as e:
                logger.exception("Background flush failed", error=str(e), pending=len(self._pending))

    # -------------------------------------------------------------------------
    # Flush internals
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return min(
            self.config.retry_backoff_base_seconds * (2 ** attempt),
            self.config.retry_backoff_max_seconds,
        )

    async def _write_batch(self, batch: List[ValidatedEvent]) -> int:
        rows = [event.to_row() for event in batch]
        last_error: Optional[Exception] = None

        for attempt in range(self.config.max_flush_retries + 1):
            start = time.perf_counter()
            try:
                await self.repository.insert_events(rows)
            except TransientStoreError as e:
                last_error = e
                BATCH_FLUSHES.labels(outcome="retry").inc()
                if attempt < self.config.max_flush_retries:
                    self._retries += 1
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Batch flush failed, retrying",
                        events=len(batch),
                        attempt=attempt + 1,
                        retry_in=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                continue
            except Exception as e:
                # Not retryable
                last_error = e
                BATCH_FLUSHES.labels(outcome="error").inc()
                logger.error("Batch flush failed", events=len(batch), error=str(e), error_type=type(e).__name__)
                break

            FLUSH_LATENCY.observe(time.perf_counter() - start)
            BATCH_FLUSHES.labels(outcome="success").inc()
            self._flushed += len(batch)
            self._last_flush_at = utcnow()
            logger.info("Batch flushed", events=len(batch), attempts=attempt + 1)
            await self._notify(batch)
            return len(batch)

        self._dead_letter(batch, rows, last_error)
        return 0

    def _dead_letter(self, batch: List[ValidatedEvent], rows: List[Dict[str, Any]], error: Optional[Exception]) -> None:
        BATCH_FLUSHES.labels(outcome="dead_lettered").inc()
        self._alert = True
        try:
            self.dead_letters.write(rows, reason=str(error))
        except Exception as e:
            # Nowhere to put the batch; keep it in memory for the next flush
            logger.critical(
                "Dead-letter write failed, re-queueing batch",
                events=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            self._pending[:0] = batch
            return
        self._dead_batches += 1
        self._dead_events += len(batch)

    async def _notify(self, batch: List[ValidatedEvent]) -> None:
        if self._on_flushed is None:
            return
        try:
            result = self._on_flushed(batch)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error("Post-flush hook failed", error=str(e), events=len(batch))

    def get_stats(self) -> BufferStats:
        return BufferStats(
            pending=len(self._pending),
            flush_in_progress=self._flush_lock.locked(),
            running=self._running,
            total_accepted=self._accepted,
            total_duplicates=self._duplicates,
            total_rejected=self._rejected,
            total_flushed=self._flushed,
            flush_retries=self._retries,
            dead_lettered_batches=self._dead_batches,
            dead_lettered_events=self._dead_events,
            alert=self._alert,
            last_flush_at=self._last_flush_at,
            dedup_circuit=self.dedup.breaker.state.value,
        )
