"""
Unit Tests - Attribution Enrichment
"""
import asyncio
import uuid

import pytest

from conftest import make_event
from event_pipeline.errors import EnrichmentFailure
from event_pipeline.transformation import (
    AttributionEnricher,
    EnrichmentWorkerPool,
    WorkItem,
    categorize_referrer,
    parse_user_agent,
)

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD_SAFARI = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
WINDOWS_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
WINDOWS_EDGE = WINDOWS_CHROME + " Edg/120.0.0.0"
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


class TestUserAgent:
    """Tests for user agent classification"""

    def test_iphone(self):
        agent = parse_user_agent(IPHONE_SAFARI)

        assert agent.device_type == "mobile"
        assert agent.browser == "Safari"
        assert agent.os == "iOS"
        assert agent.is_bot is False

    def test_ipad_is_tablet(self):
        assert parse_user_agent(IPAD_SAFARI).device_type == "tablet"

    def test_desktop_chrome(self):
        agent = parse_user_agent(WINDOWS_CHROME)

        assert agent.device_type == "desktop"
        assert agent.browser == "Chrome"
        assert agent.os == "Windows"

    def test_edge_wins_over_chrome(self):
        assert parse_user_agent(WINDOWS_EDGE).browser == "Edge"

    def test_bot(self):
        agent = parse_user_agent(GOOGLEBOT)

        assert agent.is_bot is True
        assert agent.device_type == "bot"

    def test_missing(self):
        agent = parse_user_agent(None)

        assert agent.device_type == "unknown"
        assert agent.browser is None


class TestReferrer:
    """Tests for referrer categorization"""

    @pytest.mark.parametrize(
        "referrer, expected",
        [
            ("https://www.google.com/search?q=stock+photos", ("google.com", "search")),
            ("https://duckduckgo.com/", ("duckduckgo.com", "search")),
            ("https://t.co/abc", ("t.co", "social")),
            ("https://m.facebook.com/story", ("m.facebook.com", "social")),
            ("https://mail.google.com/mail/u/0", ("mail.google.com", "email")),
            ("https://news.ycombinator.com/item?id=1", ("news.ycombinator.com", "referral")),
            ("https://blog.example.com/post", ("blog.example.com", "internal")),
        ],
    )
    def test_categories(self, referrer, expected):
        assert categorize_referrer(referrer, internal_domain="example.com") == expected

    def test_direct(self):
        assert categorize_referrer(None) == (None, "direct")
        assert categorize_referrer("") == (None, "direct")

    def test_email_campaign_overrides_domain(self):
        domain, category = categorize_referrer("https://www.google.com", utm_medium="Newsletter")

        assert domain == "google.com"
        assert category == "email"

    def test_bare_domain(self):
        assert categorize_referrer("reddit.com/r/photography") == ("reddit.com", "social")

    def test_unparseable_referrer(self):
        assert categorize_referrer("http://[broken") == (None, "direct")


@pytest.fixture
def enricher(store, test_settings) -> AttributionEnricher:
    return AttributionEnricher(store, test_settings.enrichment, internal_domain="example.com")


class TestAttributionEnricher:
    """Tests for building attribution rows"""

    async def test_event_context(self, enricher):
        event = make_event(context={
            "user_agent": IPHONE_SAFARI,
            "referrer": "https://www.google.com/",
            "utm_source": "google",
            "utm_medium": "cpc",
        })

        row = await enricher.enrich(event.to_row())

        assert row["event_id"] == event.id
        assert row["device_type"] == "mobile"
        assert row["referrer_category"] == "search"
        assert row["utm_source"] == "google"
        assert row["utm_campaign"] is None

    async def test_session_context_fills_gaps(self, enricher):
        await enricher.store_session_context("sess-1", {
            "referrer": "https://twitter.com/someone",
            "utm_source": "twitter",
            "utm_campaign": "launch",
        })
        event = make_event(session_id="sess-1", context={"user_agent": WINDOWS_CHROME})

        row = await enricher.enrich(event.to_row())

        assert row["referrer_domain"] == "twitter.com"
        assert row["referrer_category"] == "social"
        assert row["utm_campaign"] == "launch"

    async def test_event_context_wins_over_session(self, enricher):
        await enricher.store_session_context("sess-1", {"referrer": "https://twitter.com/"})
        event = make_event(context={"referrer": "https://bing.com/", "utm_source": "bing"})

        row = await enricher.enrich(event.to_row())

        assert row["referrer_domain"] == "bing.com"

    async def test_session_context_expires(self, enricher, clock):
        await enricher.store_session_context("sess-1", {"referrer": "https://twitter.com/"})
        clock.advance(3600)

        row = await enricher.enrich(make_event().to_row())

        assert row["referrer_category"] == "direct"

    async def test_malformed_context(self, enricher):
        row = make_event().to_row()
        row["context_json"] = "not-an-object"

        with pytest.raises(EnrichmentFailure):
            await enricher.enrich(row)


class TestWorkerPool:
    """Tests for the enrichment worker pool"""

    async def test_process_writes_attribution(self, repository, enricher, test_settings):
        event = make_event(context={"referrer": "https://www.google.com/"})
        await repository.insert_events([event.to_row()])
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)

        assert await pool.process(WorkItem(event.id)) is True

        attribution = await repository.get_attribution(event.id)
        assert attribution["referrer_category"] == "search"
        assert pool.get_stats().enriched == 1

    async def test_reprocessing_overwrites(self, repository, enricher, test_settings):
        event = make_event()
        await repository.insert_events([event.to_row()])
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)

        await pool.process(WorkItem(event.id))
        await pool.process(WorkItem(event.id))

        assert (await repository.get_attribution(event.id))["referrer_category"] == "direct"

    async def test_missing_event_retried_then_exhausted(self, repository, enricher, test_settings):
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)
        await pool.start()

        pool.submit(uuid.uuid4())
        await asyncio.wait_for(pool.drain(), timeout=5)

        stats = pool.get_stats()
        assert stats.retried == 2
        assert stats.exhausted == 1
        assert stats.enriched == 0
        await pool.stop()

    async def test_workers_enrich_submitted_events(self, repository, enricher, test_settings):
        events = [make_event(actor_id=f"user-{n}") for n in range(5)]
        await repository.insert_events([event.to_row() for event in events])
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)
        await pool.start()

        assert pool.submit_many(event.id for event in events) == 5
        await pool.stop(drain=True, timeout=5)

        for event in events:
            assert await repository.get_attribution(event.id) is not None

    async def test_full_queue_drops(self, repository, enricher, test_settings):
        test_settings.enrichment.queue_size = 1
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)

        assert pool.submit(uuid.uuid4()) is True
        assert pool.submit(uuid.uuid4()) is False
        assert pool.get_stats().dropped == 1

    async def test_malformed_referrer_does_not_stop_worker(self, repository, enricher, test_settings):
        test_settings.enrichment.pool_size = 1
        broken = make_event(actor_id="user-1", context={"referrer": "http://[broken"})
        good = make_event(actor_id="user-2", context={"referrer": "https://www.google.com/"})
        await repository.insert_events([broken.to_row(), good.to_row()])
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)
        await pool.start()

        pool.submit_many([broken.id, good.id])
        await asyncio.wait_for(pool.drain(), timeout=5)

        assert (await repository.get_attribution(broken.id))["referrer_category"] == "direct"
        assert (await repository.get_attribution(good.id))["referrer_category"] == "search"
        assert all(not task.done() for task in pool._workers)
        await pool.stop()

    async def test_unexpected_error_retried_then_exhausted(self, repository, enricher, test_settings):
        test_settings.enrichment.pool_size = 1
        failing = make_event(actor_id="user-1")
        good = make_event(actor_id="user-2")
        await repository.insert_events([failing.to_row(), good.to_row()])
        real_enrich = enricher.enrich

        async def enrich(event):
            if event["id"] == failing.id:
                raise RuntimeError("parser crashed")
            return await real_enrich(event)

        enricher.enrich = enrich
        pool = EnrichmentWorkerPool(repository, enricher, test_settings.enrichment)
        await pool.start()

        pool.submit_many([failing.id, good.id])
        await asyncio.wait_for(pool.drain(), timeout=5)

        stats = pool.get_stats()
        assert (stats.enriched, stats.retried, stats.exhausted) == (1, 2, 1)
        assert await repository.get_attribution(failing.id) is None
        assert await repository.get_attribution(good.id) is not None
        await pool.stop()
