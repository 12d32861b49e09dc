"""
Event Attribution Enricher

Derives traffic attribution for a stored event: device, browser and OS
classification from the user agent, referrer categorization and UTM
passthrough. Session context stored by producers under ``session:<id>``
fills in referrer and UTM fields the event itself does not carry.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import structlog

from event_pipeline.config.settings import EnrichmentSettings
from event_pipeline.errors import EnrichmentFailure, TransientStoreError
from event_pipeline.stores.base import FastStore
from event_pipeline.timeutils import utcnow

logger = structlog.get_logger(__name__)

SESSION_PREFIX = "session:"

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")

# Ordered: first match wins
_BOT_PATTERN = re.compile(r"bot|crawler|spider|slurp|headless|lighthouse|curl|wget|python-requests", re.I)

_DEVICE_PATTERNS = (
    ("tv", re.compile(r"smart-?tv|tizen|webos|appletv|roku|bravia|hbbtv", re.I)),
    ("console", re.compile(r"playstation|xbox|nintendo", re.I)),
    ("wearable", re.compile(r"watch|wearable", re.I)),
    ("tablet", re.compile(r"ipad|tablet|kindle|silk|playbook|(android(?!.*mobile))", re.I)),
    ("mobile", re.compile(r"mobi|iphone|ipod|android.*mobile|windows phone|blackberry|opera mini", re.I)),
)

_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"edg(e|a|ios)?/", re.I)),
    ("Opera", re.compile(r"opr/|opera", re.I)),
    ("Samsung Internet", re.compile(r"samsungbrowser", re.I)),
    ("Firefox", re.compile(r"firefox|fxios", re.I)),
    ("Chrome", re.compile(r"chrome|crios|chromium", re.I)),
    ("Safari", re.compile(r"safari", re.I)),
    ("Internet Explorer", re.compile(r"msie|trident", re.I)),
)

_OS_PATTERNS = (
    ("iOS", re.compile(r"iphone|ipad|ipod", re.I)),
    ("Android", re.compile(r"android", re.I)),
    ("Windows", re.compile(r"windows", re.I)),
    ("macOS", re.compile(r"mac os x|macintosh", re.I)),
    ("Chrome OS", re.compile(r"cros", re.I)),
    ("Linux", re.compile(r"linux", re.I)),
)

SEARCH_DOMAINS = ("google.", "bing.com", "duckduckgo.com", "yahoo.", "baidu.com", "yandex.", "ecosia.org")
SOCIAL_DOMAINS = (
    "facebook.com", "fb.com", "instagram.com", "twitter.com", "t.co", "x.com",
    "linkedin.com", "lnkd.in", "pinterest.", "reddit.com", "tiktok.com", "youtube.com",
)
EMAIL_DOMAINS = ("mail.google.com", "outlook.live.com", "mail.yahoo.com")


@dataclass
class ParsedUserAgent:
    device_type: str
    browser: Optional[str]
    os: Optional[str]
    is_bot: bool


def parse_user_agent(user_agent: Optional[str]) -> ParsedUserAgent:
    """Classify a user agent string; a missing agent is reported as unknown"""
    if not user_agent:
        return ParsedUserAgent(device_type="unknown", browser=None, os=None, is_bot=False)

    is_bot = bool(_BOT_PATTERN.search(user_agent))
    device_type = "bot" if is_bot else "desktop"
    if not is_bot:
        for name, pattern in _DEVICE_PATTERNS:
            if pattern.search(user_agent):
                device_type = name
                break

    browser = next((name for name, p in _BROWSER_PATTERNS if p.search(user_agent)), None)
    os_name = next((name for name, p in _OS_PATTERNS if p.search(user_agent)), None)
    return ParsedUserAgent(device_type=device_type, browser=browser, os=os_name, is_bot=is_bot)


def categorize_referrer(
    referrer: Optional[str],
    utm_medium: Optional[str] = None,
    internal_domain: Optional[str] = None,
) -> Tuple[Optional[str], str]:
    """
    Categorize a referrer URL.

    Returns:
        (referrer_domain, category) where category is one of direct,
        search, social, email, internal or referral
    """
    if utm_medium and utm_medium.lower() in ("email", "newsletter"):
        category_override = "email"
    else:
        category_override = None

    if not referrer:
        return None, category_override or "direct"

    try:
        parsed = urlparse(referrer if "//" in referrer else f"//{referrer}")
        domain = (parsed.hostname or "").lower()
    except ValueError:
        domain = ""
    if domain.startswith("www."):
        domain = domain[4:]
    if not domain:
        return None, category_override or "direct"

    if category_override:
        return domain, category_override
    if internal_domain and (domain == internal_domain or domain.endswith("." + internal_domain)):
        return domain, "internal"
    if any(domain == d or domain.endswith("." + d) for d in EMAIL_DOMAINS):
        return domain, "email"
    if any(d in domain for d in SEARCH_DOMAINS):
        return domain, "search"
    if any(domain == d or domain.endswith("." + d) or (d.endswith(".") and d in domain) for d in SOCIAL_DOMAINS):
        return domain, "social"
    return domain, "referral"


class AttributionEnricher:
    """
    Builds EventAttribution rows.

    Example:
        enricher = AttributionEnricher(store, settings.enrichment)
        row = await enricher.enrich(event_row)
    """

    def __init__(
        self,
        store: FastStore,
        config: EnrichmentSettings,
        internal_domain: Optional[str] = None,
    ):
        self.store = store
        self.config = config
        self.internal_domain = internal_domain

    async def store_session_context(self, session_id: str, context: Dict[str, Any]) -> None:
        """Persist referrer/UTM context captured at session start"""
        await self.store.set_json(
            SESSION_PREFIX + session_id,
            context,
            ttl=self.config.session_context_ttl_seconds,
        )

    async def get_session_context(self, session_id: Optional[str]) -> Dict[str, Any]:
        if not session_id:
            return {}
        try:
            return await self.store.get_json(SESSION_PREFIX + session_id) or {}
        except TransientStoreError as e:
            logger.warning("Session context unavailable", session_id=session_id, error=str(e))
            return {}

    async def enrich(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Derive the attribution row for a raw event.

        Raises:
            EnrichmentFailure: If the event payload cannot be interpreted
        """
        context = event.get("context_json")
        if context is not None and not isinstance(context, dict):
            raise EnrichmentFailure(event.get("id"), "context_json is not an object")
        context = dict(context or {})

        if not context.get("referrer") or not any(context.get(f) for f in UTM_FIELDS):
            session = await self.get_session_context(event.get("session_id"))
            for key in ("referrer",) + UTM_FIELDS:
                if not context.get(key) and session.get(key):
                    context[key] = session[key]

        agent = parse_user_agent(context.get("user_agent"))
        domain, category = categorize_referrer(
            context.get("referrer"),
            utm_medium=context.get("utm_medium"),
            internal_domain=self.internal_domain,
        )

        row = {
            "event_id": event["id"],
            "device_type": agent.device_type,
            "browser": agent.browser,
            "os": agent.os,
            "is_bot": agent.is_bot,
            "referrer": context.get("referrer"),
            "referrer_domain": domain,
            "referrer_category": category,
            "enriched_at": utcnow(),
        }
        for key in UTM_FIELDS:
            row[key] = context.get(key)
        return row
