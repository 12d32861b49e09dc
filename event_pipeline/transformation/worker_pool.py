"""
Enrichment Worker Pool

Bounded queue of event ids consumed by a fixed number of workers. Each
item is retried with exponential backoff up to a maximum number of
attempts; an exhausted item is dropped and the event stays without
attribution. Retries are re-queued after their delay, so a failing item
never holds a worker or blocks the items behind it.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

import structlog
from prometheus_client import Counter, Gauge

from event_pipeline.config.settings import EnrichmentSettings
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import EnrichmentFailure, TransientStoreError
from .enrichers import AttributionEnricher

logger = structlog.get_logger(__name__)

ENRICHMENT_OUTCOMES = Counter(
    "event_pipeline_enrichment_total",
    "Enrichment work item outcomes",
    ["outcome"],
)

ENRICHMENT_QUEUE_DEPTH = Gauge(
    "event_pipeline_enrichment_queue_depth",
    "Items waiting for an enrichment worker",
)


@dataclass
class WorkItem:
    event_id: uuid.UUID
    attempt: int = 0


@dataclass
class PoolStats:
    queued: int
    delayed_retries: int
    workers: int
    enriched: int
    retried: int
    exhausted: int
    dropped: int


class EnrichmentWorkerPool:
    """
    Fixed-size asyncio worker pool for attribution enrichment.

    Example:
        pool = EnrichmentWorkerPool(repository, enricher, settings.enrichment)
        await pool.start()
        pool.submit(event_id)
        await pool.stop()
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        enricher: AttributionEnricher,
        config: EnrichmentSettings,
    ):
        self.repository = repository
        self.enricher = enricher
        self.config = config
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self._workers: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self._enriched = 0
        self._retried = 0
        self._exhausted = 0
        self._dropped = 0

    def submit(self, event_id: uuid.UUID) -> bool:
        """
        Enqueue an event without waiting.

        Returns:
            False when the queue is full and the item was dropped
        """
        return self._put(WorkItem(event_id=event_id))

    def submit_many(self, event_ids: Iterable[uuid.UUID]) -> int:
        return sum(1 for event_id in event_ids if self.submit(event_id))

    def _put(self, item: WorkItem) -> bool:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._dropped += 1
            ENRICHMENT_OUTCOMES.labels(outcome="dropped").inc()
            logger.warning("Enrichment queue full, dropping item", event_id=str(item.event_id))
            return False
        ENRICHMENT_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"enrichment-worker-{i}")
            for i in range(self.config.pool_size)
        ]
        logger.info("Enrichment worker pool started", workers=self.config.pool_size)

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the workers, optionally letting queued items finish first"""
        if drain and self._workers:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Enrichment drain timed out", queued=self._queue.qsize())
        for task in list(self._delayed):
            task.cancel()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("Enrichment worker pool stopped")

    async def drain(self) -> None:
        """Wait until the queue and all pending retries are settled"""
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed), return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            item: WorkItem = await self._queue.get()
            try:
                await self.process(item)
            finally:
                self._queue.task_done()
                ENRICHMENT_QUEUE_DEPTH.set(self._queue.qsize())

    async def process(self, item: WorkItem) -> bool:
        """Enrich one event; failures schedule a retry or give up"""
        try:
            event = await self.repository.get_event(item.event_id)
            if event is None:
                raise EnrichmentFailure(item.event_id, "event not found")
            attribution = await self.enricher.enrich(event)
            await self.repository.upsert_attribution(attribution)
        except (EnrichmentFailure, TransientStoreError) as e:
            self._retry_or_give_up(item, e)
            return False
        except Exception as e:
            logger.error(
                "Unexpected enrichment error",
                event_id=str(item.event_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            self._retry_or_give_up(item, e)
            return False

        self._enriched += 1
        ENRICHMENT_OUTCOMES.labels(outcome="enriched").inc()
        return True

    def _retry_or_give_up(self, item: WorkItem, error: Exception) -> None:
        next_attempt = item.attempt + 1
        if next_attempt >= self.config.max_attempts:
            self._exhausted += 1
            ENRICHMENT_OUTCOMES.labels(outcome="exhausted").inc()
            logger.warning(
                "Enrichment attempts exhausted, leaving event unattributed",
                event_id=str(item.event_id),
                attempts=next_attempt,
                error=str(error),
            )
            return

        delay = min(
            self.config.backoff_base_seconds * (2 ** item.attempt),
            self.config.backoff_max_seconds,
        )
        self._retried += 1
        ENRICHMENT_OUTCOMES.labels(outcome="retried").inc()
        logger.debug("Enrichment retry scheduled", event_id=str(item.event_id), delay=delay)

        task = asyncio.create_task(self._requeue_later(WorkItem(item.event_id, next_attempt), delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _requeue_later(self, item: WorkItem, delay: float) -> None:
        await asyncio.sleep(delay)
        self._put(item)

    def get_stats(self) -> PoolStats:
        return PoolStats(
            queued=self._queue.qsize(),
            delayed_retries=len(self._delayed),
            workers=len(self._workers),
            enriched=self._enriched,
            retried=self._retried,
            exhausted=self._exhausted,
            dropped=self._dropped,
        )
