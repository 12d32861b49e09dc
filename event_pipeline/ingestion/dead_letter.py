"""
Dead-Letter Store

Batches that repeatedly fail to flush are written as Parquet files so no
accepted event is lost while the durable store is down. Files can be
replayed once the store recovers.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import polars as pl
import structlog
from prometheus_client import Counter

from event_pipeline.database.repository import AnalyticsRepository
from event_pipeline.timeutils import utcnow

logger = structlog.get_logger(__name__)

DEAD_LETTERED_EVENTS = Counter(
    "event_pipeline_dead_lettered_events_total",
    "Events written to the dead-letter path",
)

ReplayCallback = Callable[[List[Dict[str, Any]]], Union[Awaitable[None], None]]

JSON_COLUMNS = ("props_json", "context_json")

DEAD_LETTER_SCHEMA = {
    "id": pl.Utf8,
    "occurred_at": pl.Datetime("us"),
    "ingested_at": pl.Datetime("us"),
    "event_type": pl.Utf8,
    "source": pl.Utf8,
    "actor_id": pl.Utf8,
    "session_id": pl.Utf8,
    "project_id": pl.Utf8,
    "asset_id": pl.Utf8,
    "post_id": pl.Utf8,
    "license_id": pl.Utf8,
    "dimension_key": pl.Utf8,
    "props_json": pl.Utf8,
    "context_json": pl.Utf8,
    "fingerprint": pl.Utf8,
    "idempotency_key": pl.Utf8,
    "is_duplicate": pl.Boolean,
}


@dataclass
class ReplayResult:
    """Outcome of a dead-letter replay"""
    files_replayed: int = 0
    events_replayed: int = 0
    files_failed: List[str] = field(default_factory=list)


class DeadLetterStore:
    """
    Parquet-backed overflow path for raw event batches.

    Example:
        store = DeadLetterStore("./data/dead_letter")
        path = store.write(rows, reason="database unavailable")
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def _encode(self, row: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {key: row.get(key) for key in DEAD_LETTER_SCHEMA}
        encoded["id"] = str(row["id"])
        for column in JSON_COLUMNS:
            encoded[column] = json.dumps(row.get(column) or {}, default=str)
        encoded["is_duplicate"] = bool(row.get("is_duplicate", False))
        return encoded

    def _decode(self, record: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(record)
        row["id"] = uuid.UUID(row["id"])
        for column in JSON_COLUMNS:
            row[column] = json.loads(row[column]) if row[column] else {}
        return row

    def write(self, rows: List[Dict[str, Any]], reason: str) -> Path:
        """Persist a failed batch and return the file written"""
        self.path.mkdir(parents=True, exist_ok=True)
        timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
        output_file = self.path / f"events_{timestamp}_{uuid.uuid4().hex[:8]}.parquet"

        df = pl.DataFrame([self._encode(row) for row in rows], schema=DEAD_LETTER_SCHEMA)
        df.write_parquet(output_file)
        DEAD_LETTERED_EVENTS.inc(len(rows))

        logger.critical(
            "Batch dead-lettered",
            events=len(rows),
            path=str(output_file),
            reason=reason,
        )
        return output_file

    def list_batches(self) -> List[Path]:
        if not self.path.exists():
            return []
        return sorted(self.path.glob("events_*.parquet"))

    def read(self, path: Path) -> List[Dict[str, Any]]:
        return [self._decode(record) for record in pl.read_parquet(path).to_dicts()]

    def pending_events(self) -> int:
        return sum(pl.read_parquet(path).height for path in self.list_batches())

    async def replay(
        self,
        repository: AnalyticsRepository,
        on_replayed: Optional[ReplayCallback] = None,
    ) -> ReplayResult:
        """
        Re-insert dead-lettered batches into the durable store.

        Files are removed only after their insert commits; inserts skip ids
        that already exist, so a partially replayed file is safe to retry.
        ``on_replayed`` receives the rows of each replayed file, the same way
        the buffer's post-flush hook receives a flushed batch.
        """
        result = ReplayResult()
        for path in self.list_batches():
            rows = self.read(path)
            try:
                await repository.insert_events(rows)
            except Exception as e:
                logger.warning("Dead-letter replay failed", path=str(path), error=str(e), error_type=type(e).__name__)
                result.files_failed.append(str(path))
                continue
            path.unlink()
            result.files_replayed += 1
            result.events_replayed += len(rows)
            logger.info("Dead-letter batch replayed", path=str(path), events=len(rows))
            await self._notify(on_replayed, rows)
        return result

    async def _notify(self, callback: Optional[ReplayCallback], rows: List[Dict[str, Any]]) -> None:
        if callback is None:
            return
        try:
            result = callback(rows)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error("Post-replay hook failed", error=str(e), events=len(rows))
