"""
Event Model

Producer-facing event schema, typed props per event type, validation,
fingerprinting and the dimension key encoding shared by every metric tier.

Props are a tagged union keyed by event type: each known type maps to a
pydantic model, and fields the model does not declare are kept in an
``extras`` bucket so producers can ship new fields ahead of schema changes.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from event_pipeline.errors import EventValidationError
from event_pipeline.timeutils import to_naive_utc, utcnow


PLATFORM_DIMENSION_KEY = ""

# Fixed encoding order of the dimension key components
DIMENSION_FIELDS = (
    ("project", "project_id"),
    ("asset", "asset_id"),
    ("post", "post_id"),
    ("license", "license_id"),
)

# Separators of the dimension key encoding, never allowed inside an entity id
RESERVED_REF_CHARS = frozenset("|=")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class EventType(str, Enum):
    """Known analytics event types"""
    PAGE_VIEWED = "page_viewed"
    POST_VIEWED = "post_viewed"
    ASSET_VIEWED = "asset_viewed"
    PROJECT_VIEWED = "project_viewed"
    LICENSE_VIEWED = "license_viewed"
    CTA_CLICKED = "cta_clicked"
    POST_CTA_CLICKED = "post_cta_clicked"
    ASSET_DOWNLOADED = "asset_downloaded"
    POST_SHARED = "post_shared"
    POST_ENGAGEMENT_TIME = "post_engagement_time"
    LICENSE_CREATED = "license_created"
    LICENSE_SIGNED = "license_signed"
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYOUT_COMPLETED = "payout_completed"
    ASSET_UPLOADED = "asset_uploaded"
    SEARCH_PERFORMED = "search_performed"


CLICK_EVENTS = frozenset({
    EventType.CTA_CLICKED,
    EventType.POST_CTA_CLICKED,
    EventType.ASSET_DOWNLOADED,
})

CONVERSION_EVENTS = frozenset({
    EventType.LICENSE_CREATED,
    EventType.LICENSE_SIGNED,
    EventType.CHECKOUT_COMPLETED,
})

REVENUE_EVENTS = CONVERSION_EVENTS | {EventType.PAYOUT_COMPLETED}


# =============================================================================
# TYPED PROPS
# =============================================================================

class EventProps(BaseModel):
    """Generic props; unknown fields are retained as extras"""

    model_config = ConfigDict(extra="allow")

    @property
    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ViewProps(EventProps):
    post_id: Optional[str] = None
    asset_id: Optional[str] = None
    view_duration_ms: Optional[int] = Field(default=None, ge=0)
    path: Optional[str] = None


class CtaClickProps(EventProps):
    cta_type: str
    cta_url: Optional[str] = None


class DownloadProps(EventProps):
    asset_id: Optional[str] = None
    file_format: Optional[str] = None


class EngagementProps(EventProps):
    engagement_seconds: float = Field(ge=0)
    scroll_depth: Optional[float] = None


class ConversionProps(EventProps):
    license_id: Optional[str] = None
    revenue_cents: Optional[int] = Field(default=None, ge=0)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None


class PayoutProps(EventProps):
    amount_cents: int = Field(ge=0)
    payment_method: str
    currency: Optional[str] = None


class SearchProps(EventProps):
    query: Optional[str] = None
    results_count: Optional[int] = None


PROPS_REGISTRY: Dict[EventType, Type[EventProps]] = {
    EventType.PAGE_VIEWED: ViewProps,
    EventType.POST_VIEWED: ViewProps,
    EventType.ASSET_VIEWED: ViewProps,
    EventType.PROJECT_VIEWED: ViewProps,
    EventType.LICENSE_VIEWED: ViewProps,
    EventType.CTA_CLICKED: EventProps,
    EventType.POST_CTA_CLICKED: CtaClickProps,
    EventType.ASSET_DOWNLOADED: DownloadProps,
    EventType.POST_ENGAGEMENT_TIME: EngagementProps,
    EventType.LICENSE_CREATED: ConversionProps,
    EventType.LICENSE_SIGNED: ConversionProps,
    EventType.CHECKOUT_COMPLETED: ConversionProps,
    EventType.PAYOUT_COMPLETED: PayoutProps,
    EventType.SEARCH_PERFORMED: SearchProps,
}

# Entity reference required per type, satisfied by entity_refs or props
REQUIRED_REFS: Dict[EventType, str] = {
    EventType.POST_VIEWED: "post_id",
    EventType.ASSET_VIEWED: "asset_id",
    EventType.LICENSE_SIGNED: "license_id",
}


def parse_props(event_type: EventType, props: Optional[Mapping[str, Any]]) -> EventProps:
    """
    Parse raw props into the typed model registered for the event type.

    Raises:
        EventValidationError: If the props do not satisfy the model
    """
    model = PROPS_REGISTRY.get(event_type, EventProps)
    try:
        return model.model_validate(dict(props or {}))
    except ValidationError as e:
        raise EventValidationError([
            f"props.{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ])


# =============================================================================
# PAYLOAD MODELS
# =============================================================================

class EntityRefs(BaseModel):
    """Optional entity references an event is scoped to"""
    project_id: Optional[str] = None
    asset_id: Optional[str] = None
    post_id: Optional[str] = None
    license_id: Optional[str] = None

    @field_validator("project_id", "asset_id", "post_id", "license_id")
    @classmethod
    def check_ref(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and RESERVED_REF_CHARS.intersection(v):
            raise ValueError("must not contain '|' or '='")
        return v

    def dimension_key(self) -> str:
        return encode_dimension_key(**self.model_dump())


class EventContext(BaseModel):
    """Request context captured by the producer, used only for enrichment"""
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    ip_address: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None


class EventIn(BaseModel):
    """Event payload as submitted by producers"""
    event_type: str
    occurred_at: Optional[datetime] = None
    source: str = "web"
    actor_id: Optional[str] = None
    session_id: Optional[str] = None
    entity_refs: EntityRefs = Field(default_factory=EntityRefs)
    props: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    context: EventContext = Field(default_factory=EventContext)


@dataclass
class ValidatedEvent:
    """An accepted event, ready for deduplication and buffering"""
    id: uuid.UUID
    event_type: EventType
    occurred_at: datetime
    source: str
    actor_id: Optional[str]
    session_id: Optional[str]
    refs: EntityRefs
    props: EventProps
    context: EventContext
    fingerprint: str
    idempotency_key: Optional[str] = None
    ingested_at: datetime = field(default_factory=utcnow)

    @property
    def dimension_key(self) -> str:
        return self.refs.dimension_key()

    def to_row(self) -> Dict[str, Any]:
        """Column values for a RawEvent insert"""
        return {
            "id": self.id,
            "occurred_at": self.occurred_at,
            "ingested_at": self.ingested_at,
            "event_type": self.event_type.value,
            "source": self.source,
            "actor_id": self.actor_id,
            "session_id": self.session_id,
            "project_id": self.refs.project_id,
            "asset_id": self.refs.asset_id,
            "post_id": self.refs.post_id,
            "license_id": self.refs.license_id,
            "dimension_key": self.dimension_key,
            "props_json": self.props.to_json(),
            "context_json": self.context.model_dump(exclude_none=True),
            "fingerprint": self.fingerprint,
            "idempotency_key": self.idempotency_key,
            "is_duplicate": False,
        }


# =============================================================================
# DIMENSION KEYS
# =============================================================================

def encode_dimension_key(
    project_id: Optional[str] = None,
    asset_id: Optional[str] = None,
    post_id: Optional[str] = None,
    license_id: Optional[str] = None,
) -> str:
    """
    Canonical dimension key, e.g. ``project=p1|post=post-123``.

    Absent refs are omitted; all refs absent is the platform-wide key.

    Raises:
        ValueError: When a ref contains a key separator
    """
    values = {
        "project_id": project_id,
        "asset_id": asset_id,
        "post_id": post_id,
        "license_id": license_id,
    }
    for attr, value in values.items():
        if value and RESERVED_REF_CHARS.intersection(value):
            raise ValueError(f"Invalid {attr}: {value!r}")
    return "|".join(
        f"{label}={values[attr]}" for label, attr in DIMENSION_FIELDS if values[attr]
    )


def decode_dimension_key(key: str) -> Dict[str, Optional[str]]:
    """Inverse of encode_dimension_key"""
    labels = {label: attr for label, attr in DIMENSION_FIELDS}
    refs: Dict[str, Optional[str]] = {attr: None for _, attr in DIMENSION_FIELDS}
    if not key:
        return refs
    for part in key.split("|"):
        label, _, value = part.partition("=")
        if label not in labels:
            raise ValueError(f"Unknown dimension component: {label!r}")
        refs[labels[label]] = value
    return refs


def contributing_keys(dimension_key: str) -> List[str]:
    """Every event counts toward its own key and the platform-wide key"""
    if dimension_key == PLATFORM_DIMENSION_KEY:
        return [PLATFORM_DIMENSION_KEY]
    return [dimension_key, PLATFORM_DIMENSION_KEY]


# =============================================================================
# FINGERPRINT & METRIC CLASSIFICATION
# =============================================================================

def compute_fingerprint(
    event_type: str,
    actor_id: Optional[str],
    session_id: Optional[str],
    dimension_key: str,
    occurred_at: datetime,
) -> str:
    """SHA-256 over the identity fields with the timestamp floored to the second"""
    second = occurred_at.replace(microsecond=0).isoformat()
    payload = "|".join([
        event_type,
        actor_id or "anonymous",
        dimension_key,
        session_id or "",
        second,
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class MetricContribution:
    """What a single event adds to a metric row"""
    views: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue_cents: int = 0
    engagement_seconds: float = 0.0


def classify_event(event_type: str, props: Optional[Mapping[str, Any]]) -> MetricContribution:
    """Map an event to its contribution to views, clicks, conversions, revenue and engagement"""
    props = props or {}
    contribution = MetricContribution()
    try:
        etype = EventType(event_type)
    except ValueError:
        return contribution

    if etype.value.endswith("_viewed"):
        contribution.views = 1
    if etype in CLICK_EVENTS:
        contribution.clicks = 1
    if etype in CONVERSION_EVENTS:
        contribution.conversions = 1
    if etype in REVENUE_EVENTS:
        contribution.revenue_cents = int(props.get("revenue_cents") or props.get("amount_cents") or 0)
    if etype == EventType.POST_ENGAGEMENT_TIME:
        contribution.engagement_seconds = float(props.get("engagement_seconds") or 0.0)
    return contribution


# =============================================================================
# VALIDATION
# =============================================================================

def validate_event(
    event: Union[EventIn, Mapping[str, Any]],
    *,
    max_future_skew_seconds: int = 300,
    retention_floor_days: int = 30,
    now: Optional[datetime] = None,
) -> ValidatedEvent:
    """
    Validate a producer payload and build the accepted event.

    Checks the event type is known, the timestamp is plausible and the
    per-type props and entity refs are present.

    Raises:
        EventValidationError: With every problem found
    """
    if not isinstance(event, EventIn):
        try:
            event = EventIn.model_validate(event)
        except ValidationError as e:
            raise EventValidationError([
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ])

    now = now or utcnow()
    errors: List[str] = []

    try:
        event_type = EventType(event.event_type)
    except ValueError:
        raise EventValidationError([f"event_type: unknown event type {event.event_type!r}"])

    occurred_at = to_naive_utc(event.occurred_at) if event.occurred_at else now
    if occurred_at > now + timedelta(seconds=max_future_skew_seconds):
        errors.append("occurred_at: timestamp is in the future")
    if occurred_at < now - timedelta(days=retention_floor_days):
        errors.append(f"occurred_at: timestamp is older than {retention_floor_days} days")

    props: Optional[EventProps] = None
    try:
        props = parse_props(event_type, event.props)
    except EventValidationError as e:
        errors.extend(e.errors)

    required = REQUIRED_REFS.get(event_type)
    if required and not (getattr(event.entity_refs, required) or event.props.get(required)):
        errors.append(f"entity_refs.{required}: required for {event_type.value}")

    for _, attr in DIMENSION_FIELDS:
        value = event.props.get(attr)
        if getattr(event.entity_refs, attr) is not None or not isinstance(value, str):
            continue
        if RESERVED_REF_CHARS.intersection(value):
            errors.append(f"props.{attr}: must not contain '|' or '='")

    if errors:
        raise EventValidationError(errors)

    # Ids carried only in props still scope the event
    refs = event.entity_refs.model_copy()
    for _, attr in DIMENSION_FIELDS:
        if getattr(refs, attr) is None and isinstance(event.props.get(attr), str):
            setattr(refs, attr, event.props[attr])

    dimension_key = refs.dimension_key()
    return ValidatedEvent(
        id=uuid.uuid4(),
        event_type=event_type,
        occurred_at=occurred_at,
        source=event.source,
        actor_id=event.actor_id,
        session_id=event.session_id,
        refs=refs,
        props=props,
        context=event.context,
        fingerprint=compute_fingerprint(
            event_type.value, event.actor_id, event.session_id, dimension_key, occurred_at
        ),
        idempotency_key=event.idempotency_key,
        ingested_at=now,
    )
