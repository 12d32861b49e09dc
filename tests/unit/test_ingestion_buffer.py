"""
Unit Tests - Ingestion Buffer and Dead Letters
"""
import asyncio
from datetime import timedelta

import pytest

from conftest import event_payload, make_event
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.errors import TransientStoreError
from event_pipeline.ingestion import DeadLetterStore, DeduplicationEngine, IngestionBuffer
from event_pipeline.timeutils import utcnow

# Fixed timestamp so repeated payloads share a fingerprint
RECENT = utcnow().replace(microsecond=0) - timedelta(minutes=5)


class FlakyRepository(AnalyticsRepository):
    """Repository whose first ``failures`` inserts time out"""

    def __init__(self, engine, failures: int):
        super().__init__(engine, timeout=5.0)
        self.failures = failures
        self.attempts = 0

    async def insert_events(self, rows):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientStoreError("database", "insert_events")
        return await super().insert_events(rows)


class BlockingRepository(AnalyticsRepository):
    """Repository whose inserts wait until ``release`` is set"""

    def __init__(self, engine):
        super().__init__(engine, timeout=5.0)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.batch_sizes = []

    async def insert_events(self, rows):
        self.batch_sizes.append(len(rows))
        self.entered.set()
        await self.release.wait()
        return await super().insert_events(rows)


class RejectingRepository(AnalyticsRepository):
    """Repository whose inserts fail with a non-transient error"""

    async def insert_events(self, rows):
        raise ValueError("row rejected by driver")


class UnwritableDeadLetterStore(DeadLetterStore):
    def write(self, rows, reason):
        raise RuntimeError("parquet encoder failed")


@pytest.fixture
def dead_letters(test_settings) -> DeadLetterStore:
    return DeadLetterStore(test_settings.data_lake.dead_letter_path)


def build_buffer(repository, store, test_settings, dead_letters, clock, on_flushed=None) -> IngestionBuffer:
    dedup = DeduplicationEngine(store, repository, test_settings.dedup, clock=clock)
    return IngestionBuffer(repository, dedup, test_settings.ingestion, dead_letters, on_flushed=on_flushed)


@pytest.fixture
def buffer(repository, store, test_settings, dead_letters, clock) -> IngestionBuffer:
    return build_buffer(repository, store, test_settings, dead_letters, clock)


class TestIngest:
    """Tests for per-event results"""

    async def test_accepted_event_is_buffered(self, buffer):
        result = await buffer.ingest(event_payload())

        assert result.accepted is True
        assert result.duplicate is False
        assert result.event_id is not None
        assert buffer.pending == 1

    async def test_duplicate_is_dropped(self, buffer):
        payload = event_payload(occurred_at=RECENT)
        await buffer.ingest(payload)

        result = await buffer.ingest(payload)

        assert result.accepted is True
        assert result.duplicate is True
        assert result.event_id is None
        assert buffer.pending == 1

    async def test_invalid_event_rejected(self, buffer):
        result = await buffer.ingest({"event_type": "post_viewed"})

        assert result.accepted is False
        assert result.errors
        assert buffer.pending == 0
        assert buffer.get_stats().total_rejected == 1

    async def test_unknown_type_rejected(self, buffer):
        result = await buffer.ingest({"event_type": "made_up"})

        assert result.accepted is False


class TestFlush:
    """Tests for batch flushing"""

    async def test_flush_at_batch_size(self, buffer, repository):
        for n in range(10):
            await buffer.ingest(event_payload(actor_id=f"user-{n}"))

        assert buffer.pending == 0
        assert len(await repository.list_events()) == 10

    async def test_manual_flush(self, buffer, repository):
        await buffer.ingest(event_payload())

        assert await buffer.flush() == 1
        assert await buffer.flush() == 0
        assert len(await repository.list_events()) == 1

    async def test_duplicates_never_written(self, buffer, repository):
        for _ in range(3):
            await buffer.ingest(event_payload(occurred_at=RECENT))
        await buffer.flush()

        events = await repository.list_events(post_id="post-123")
        assert len(events) == 1

    async def test_timer_flush(self, buffer, repository):
        await buffer.start()
        await buffer.ingest(event_payload())
        await asyncio.sleep(0.2)

        assert len(await repository.list_events()) == 1
        await buffer.stop()

    async def test_running_buffer_flushes_full_batch_before_timeout(
        self, repository, store, test_settings, dead_letters, clock
    ):
        test_settings.ingestion.batch_timeout_seconds = 60
        flushed = asyncio.Event()
        buffer = build_buffer(
            repository, store, test_settings, dead_letters, clock, on_flushed=lambda batch: flushed.set()
        )
        await buffer.start()
        for n in range(10):
            await buffer.ingest(event_payload(actor_id=f"user-{n}"))

        await asyncio.wait_for(flushed.wait(), timeout=2)

        assert buffer.pending == 0
        assert len(await repository.list_events()) == 10
        await buffer.stop()

    async def test_events_ingested_during_flush_go_to_next_batch(
        self, test_engine, store, test_settings, dead_letters, clock
    ):
        repository = BlockingRepository(test_engine)
        buffer = build_buffer(repository, store, test_settings, dead_letters, clock)
        early = [await buffer.ingest(event_payload(actor_id=f"early-{n}")) for n in range(3)]

        in_flight = asyncio.create_task(buffer.flush())
        await asyncio.wait_for(repository.entered.wait(), timeout=2)
        late = [await buffer.ingest(event_payload(actor_id=f"late-{n}")) for n in range(2)]

        assert buffer.pending == 2
        assert buffer.get_stats().flush_in_progress is True

        repository.release.set()
        assert await in_flight == 3
        assert await buffer.force_flush() == 2

        stored = [str(event["id"]) for event in await repository.list_events()]
        assert sorted(stored) == sorted(r.event_id for r in early + late)
        assert repository.batch_sizes == [3, 2]

    async def test_stop_flushes_pending(self, repository, store, test_settings, dead_letters, clock):
        test_settings.ingestion.batch_timeout_seconds = 60
        buffer = build_buffer(repository, store, test_settings, dead_letters, clock)
        await buffer.start()
        await buffer.ingest(event_payload())

        await buffer.stop()

        assert len(await repository.list_events()) == 1
        assert buffer.get_stats().running is False

    async def test_on_flushed_receives_batch(self, repository, store, test_settings, dead_letters, clock):
        seen = []

        async def on_flushed(batch):
            seen.extend(event.id for event in batch)

        buffer = build_buffer(repository, store, test_settings, dead_letters, clock, on_flushed)
        result = await buffer.ingest(event_payload())
        await buffer.flush()

        assert [str(event_id) for event_id in seen] == [result.event_id]

    async def test_hook_failure_does_not_fail_flush(self, repository, store, test_settings, dead_letters, clock):
        def on_flushed(batch):
            raise RuntimeError("downstream down")

        buffer = build_buffer(repository, store, test_settings, dead_letters, clock, on_flushed)
        await buffer.ingest(event_payload())

        assert await buffer.flush() == 1


class TestRetryAndDeadLetter:
    """Tests for flush retries and the overflow path"""

    async def test_retry_then_succeed(self, test_engine, store, test_settings, dead_letters, clock):
        repository = FlakyRepository(test_engine, failures=2)
        buffer = build_buffer(repository, store, test_settings, dead_letters, clock)
        await buffer.ingest(event_payload())

        assert await buffer.flush() == 1
        assert repository.attempts == 3
        assert buffer.get_stats().flush_retries == 2
        assert dead_letters.list_batches() == []

    async def test_exhausted_retries_dead_letter(self, test_engine, store, test_settings, dead_letters, clock):
        repository = FlakyRepository(test_engine, failures=100)
        buffer = build_buffer(repository, store, test_settings, dead_letters, clock)
        await buffer.ingest(event_payload())
        await buffer.ingest(event_payload(actor_id="user-2"))

        assert await buffer.flush() == 0

        stats = buffer.get_stats()
        assert stats.alert is True
        assert stats.dead_lettered_batches == 1
        assert stats.dead_lettered_events == 2
        assert len(dead_letters.list_batches()) == 1
        assert dead_letters.pending_events() == 2

    async def test_non_transient_error_dead_letters(self, test_engine, store, test_settings, dead_letters, clock):
        repository = RejectingRepository(test_engine, timeout=5.0)
        buffer = build_buffer(repository, store, test_settings, dead_letters, clock)
        await buffer.ingest(event_payload())

        assert await buffer.flush() == 0
        assert buffer.get_stats().dead_lettered_events == 1
        assert dead_letters.pending_events() == 1

    async def test_dead_letter_write_failure_requeues_batch(self, test_engine, store, test_settings, clock, tmp_path):
        repository = FlakyRepository(test_engine, failures=3)
        unwritable = UnwritableDeadLetterStore(str(tmp_path / "unwritable"))
        buffer = build_buffer(repository, store, test_settings, unwritable, clock)
        accepted = await buffer.ingest(event_payload())

        assert await buffer.flush() == 0
        assert buffer.pending == 1
        assert buffer.get_stats().alert is True

        assert await buffer.flush() == 1
        assert [str(event["id"]) for event in await repository.list_events()] == [accepted.event_id]

    async def test_flusher_survives_failed_flush(self, buffer, repository, monkeypatch):
        write_batch = buffer._write_batch
        calls = []

        async def fail_first(batch):
            calls.append(len(batch))
            if len(calls) == 1:
                raise RuntimeError("unexpected flush failure")
            return await write_batch(batch)

        monkeypatch.setattr(buffer, "_write_batch", fail_first)
        await buffer.start()
        await buffer.ingest(event_payload(actor_id="user-1"))
        await asyncio.sleep(0.2)
        await buffer.ingest(event_payload(actor_id="user-2"))
        await asyncio.sleep(0.2)

        assert buffer.get_stats().running is True
        assert not buffer._task.done()
        assert [event["actor_id"] for event in await repository.list_events()] == ["user-2"]
        await buffer.stop()

    async def test_replay_restores_events(self, test_engine, store, test_settings, dead_letters, clock):
        flaky = FlakyRepository(test_engine, failures=100)
        buffer = build_buffer(flaky, store, test_settings, dead_letters, clock)
        accepted = await buffer.ingest(event_payload(props={"referrer": "https://google.com"}))
        await buffer.flush()

        repository = AnalyticsRepository(test_engine, timeout=5.0)
        result = await dead_letters.replay(repository)

        assert result.files_replayed == 1
        assert result.events_replayed == 1
        assert dead_letters.list_batches() == []
        events = await repository.list_events()
        assert [str(event["id"]) for event in events] == [accepted.event_id]
        assert events[0]["props_json"]["referrer"] == "https://google.com"

    async def test_replay_hands_rows_to_callback(self, dead_letters, repository):
        event = make_event()
        dead_letters.write([event.to_row()], reason="database unavailable")
        replayed = []

        result = await dead_letters.replay(
            repository, on_replayed=lambda rows: replayed.extend(row["id"] for row in rows)
        )

        assert result.events_replayed == 1
        assert replayed == [event.id]

    async def test_replay_keeps_file_on_failure(self, test_engine, dead_letters, repository):
        flaky = FlakyRepository(test_engine, failures=100)
        dead_letters.write([make_event().to_row()], reason="database unavailable")
        result = await dead_letters.replay(flaky)

        assert result.files_replayed == 0
        assert len(result.files_failed) == 1
        assert len(dead_letters.list_batches()) == 1
