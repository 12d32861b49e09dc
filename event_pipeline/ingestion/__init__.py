"""
Event ingestion: deduplication, buffering and overflow
"""
from .buffer import BufferStats, IngestionBuffer, IngestResult
from .dead_letter import DeadLetterStore, ReplayResult
from .dedup import DeduplicationEngine, DedupHealth, HealthStatus, SweepResult

__all__ = [
    "BufferStats",
    "DeadLetterStore",
    "DedupHealth",
    "DeduplicationEngine",
    "HealthStatus",
    "IngestResult",
    "IngestionBuffer",
    "ReplayResult",
    "SweepResult",
]
