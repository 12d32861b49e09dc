"""
Test Suite Configuration
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Dict, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from event_pipeline.config import Settings
from event_pipeline.config.settings import (
    DataLakeSettings,
    EnrichmentSettings,
    FastStoreSettings,
    IngestionSettings,
)
from event_pipeline.database.connection import create_schema
from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.events import ValidatedEvent, validate_event
from event_pipeline.stores.memory import MemoryFastStore


class FakeClock:
    """Monotonic clock driven by the test"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_event(
    event_type: str = "post_viewed",
    occurred_at: Optional[datetime] = None,
    actor_id: Optional[str] = "user-1",
    session_id: Optional[str] = "sess-1",
    entity_refs: Optional[Dict[str, Any]] = None,
    props: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> ValidatedEvent:
    """Build a validated event at an arbitrary point in time"""
    occurred_at = occurred_at or datetime(2024, 1, 15, 12, 0, 0)
    if entity_refs is None and event_type == "post_viewed":
        entity_refs = {"post_id": "post-123"}
    payload = {
        "event_type": event_type,
        "occurred_at": occurred_at,
        "actor_id": actor_id,
        "session_id": session_id,
        "entity_refs": entity_refs or {},
        "props": props or {},
        "context": context or {},
        **extra,
    }
    return validate_event(payload, now=occurred_at + timedelta(minutes=1))


def event_payload(event_type: str = "post_viewed", **fields: Any) -> Dict[str, Any]:
    """Producer payload for an event happening now"""
    payload: Dict[str, Any] = {
        "event_type": event_type,
        "actor_id": "user-1",
        "session_id": "sess-1",
    }
    if event_type == "post_viewed":
        payload["entity_refs"] = {"post_id": "post-123"}
    payload.update(fields)
    return payload


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
        fast_store=FastStoreSettings(backend="memory"),
        ingestion=IngestionSettings(
            batch_size=10,
            batch_timeout_seconds=0.05,
            max_flush_retries=2,
            retry_backoff_base_seconds=0,
            retry_backoff_max_seconds=0,
        ),
        enrichment=EnrichmentSettings(
            pool_size=2,
            backoff_base_seconds=0,
            backoff_max_seconds=0,
            internal_domain="example.com",
        ),
        data_lake=DataLakeSettings(
            lake_path=str(tmp_path),
            dead_letter_path=str(tmp_path / "dead_letter"),
        ),
    )


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine on a throwaway SQLite file"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}", echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(test_engine) -> AnalyticsRepository:
    return AnalyticsRepository(test_engine, timeout=5.0)


@pytest.fixture
def store(clock) -> MemoryFastStore:
    return MemoryFastStore(clock=clock)


@pytest.fixture
def post_view() -> ValidatedEvent:
    return make_event()
