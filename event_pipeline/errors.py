"""
Pipeline Error Taxonomy

Exceptions raised across ingestion, aggregation and serving. Only
EventValidationError is ever surfaced to producers; everything else is
handled inside the pipeline.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors"""


class EventValidationError(PipelineError):
    """Malformed event. Rejected and never retried."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid event")


class TransientStoreError(PipelineError):
    """Timeout or unavailability of the fast or durable store. Retryable."""

    def __init__(self, store: str, operation: str, cause: Optional[BaseException] = None):
        self.store = store
        self.operation = operation
        self.cause = cause
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"{store} {operation} failed{detail}")


class LockContention(PipelineError):
    """Another run owns the (job_type, period) lock. Callers skip, not retry."""

    def __init__(self, lock_key: str):
        self.lock_key = lock_key
        super().__init__(f"lock held: {lock_key}")


class EnrichmentFailure(PipelineError):
    """Attribution could not be derived for an event"""

    def __init__(self, event_id, reason: str):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"enrichment failed for {event_id}: {reason}")


class DuplicateDetected(PipelineError):
    """
    Signal that an event was already seen.

    Never propagated to callers; ingestion reports it as ``duplicate=True``.
    """

    def __init__(self, fingerprint: str, reason: str = "fingerprint"):
        self.fingerprint = fingerprint
        self.reason = reason
        super().__init__(f"duplicate by {reason}: {fingerprint}")
