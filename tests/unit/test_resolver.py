"""Tests for URL resolution and the endpoint table."""

import httpx
import pytest

from stock_agent.core.config import ARCHIVE_BASE_URL, DEFAULT_FALLBACK_URLS, ResolverConfig
from stock_agent.models import ENDPOINT_CATEGORIES, CSVCandidate, EndpointCategory, EndpointDescriptor
from stock_agent.scrapers.nse.classifier import CSVClassifier
from stock_agent.scrapers.nse.page_crawler import PageCrawler
from stock_agent.scrapers.nse.resolver import (
    URLResolver,
    build_endpoints,
    cache_key_for,
    resolve_endpoints,
)
from tests.fixtures.listings import (
    DEBT_URL,
    EQUITY_URL,
    ETF_URL,
    LISTING_PAGE_URL,
    SME_URL,
)

SME_ALTERNATIVE = "https://www.nseindia.com/emerge/corporates/content/SME_EQUITY_L.csv"


def candidate(url, category, priority, quality, should_use=True):
    return CSVCandidate(
        url=url,
        category=category,
        priority=priority,
        quality_score=quality,
        confidence=0.8,
        should_use=should_use,
    )


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class ExplodingCrawler:
    async def discover_candidate_urls(self, page_url=None):
        raise RuntimeError("crawler exploded")


def make_resolver(client, clock=None, crawler=None, config=None):
    return URLResolver(
        client,
        crawler or PageCrawler(client),
        CSVClassifier(client),
        config=config,
        clock=clock or FakeClock(),
    )


class TestResolveEndpoints:
    """Test suite for the pure resolution pass."""

    def test_equity_sme_and_debt_scenario(self):
        """Test the canonical listing wins equity, SME goes to sme, debt goes nowhere."""
        candidates = [
            candidate(EQUITY_URL, EndpointCategory.EQUITY, 10, 10),
            candidate(SME_URL, EndpointCategory.SME, 9, 9.6),
            candidate(DEBT_URL, EndpointCategory.DEBT, 3, 4.1, should_use=False),
        ]

        resolution = resolve_endpoints(candidates, DEFAULT_FALLBACK_URLS)

        assert resolution.urls["equity"] == EQUITY_URL
        assert resolution.urls["sme"] == SME_URL
        assert DEBT_URL not in resolution.urls.values()
        assert resolution.backfilled == {"etf": "fallback", "reits": "fallback", "invits": "fallback"}

    def test_every_category_gets_a_url(self):
        """Test an empty candidate list resolves to the fallback table."""
        resolution = resolve_endpoints([], DEFAULT_FALLBACK_URLS)

        assert resolution.urls == DEFAULT_FALLBACK_URLS

    def test_sme_file_never_becomes_equity(self):
        """Test an SME listing labelled equity is skipped for the equity slot."""
        candidates = [candidate(SME_URL, EndpointCategory.EQUITY, 10, 10)]

        resolution = resolve_endpoints(candidates, DEFAULT_FALLBACK_URLS)

        assert resolution.urls["equity"] == DEFAULT_FALLBACK_URLS["equity"]
        assert resolution.backfilled["equity"] == "fallback"

    def test_first_equity_assignment_is_sticky(self):
        """Test a later equity candidate never displaces the first one chosen."""
        other = f"{ARCHIVE_BASE_URL}/content/equities/PREF.csv"
        candidates = [
            candidate(other, EndpointCategory.EQUITY, 10, 9),
            candidate(EQUITY_URL, EndpointCategory.EQUITY, 10, 10),
        ]

        resolution = resolve_endpoints(candidates, DEFAULT_FALLBACK_URLS)

        assert resolution.urls["equity"] == EQUITY_URL
        assert resolution.selected["equity"].url == EQUITY_URL

    def test_non_equity_replaced_by_strong_newcomer(self):
        """Test a later high-quality candidate replaces a non-equity assignment."""
        first = f"{ARCHIVE_BASE_URL}/content/equities/etf_a.csv"
        second = f"{ARCHIVE_BASE_URL}/content/equities/etf_b.csv"
        candidates = [
            candidate(first, EndpointCategory.ETF, 7, 9),
            candidate(second, EndpointCategory.ETF, 7, 8),
        ]

        resolution = resolve_endpoints(candidates, DEFAULT_FALLBACK_URLS)

        assert resolution.urls["etf"] == second

    def test_loose_candidate_backfills_before_fallback(self):
        """Test an accepted but unrecommended candidate beats the fallback table."""
        loose = f"{ARCHIVE_BASE_URL}/content/equities/etf_list.csv"
        candidates = [candidate(loose, EndpointCategory.ETF, 7, 6)]

        resolution = resolve_endpoints(candidates, DEFAULT_FALLBACK_URLS)

        assert resolution.urls["etf"] == loose
        assert resolution.backfilled["etf"] == "candidate"

    def test_debt_like_equity_replaced_by_primary_listing(self):
        """Test the equity slot never ends on a debt-like URL."""
        debt_equity = f"{ARCHIVE_BASE_URL}/content/debt/EQUITY_DEBT_L.csv"
        candidates = [
            candidate(debt_equity, EndpointCategory.EQUITY, 10, 10),
            candidate(EQUITY_URL, EndpointCategory.UNKNOWN, 0, 6.5, should_use=False),
        ]

        resolution = resolve_endpoints(candidates, DEFAULT_FALLBACK_URLS)

        assert resolution.urls["equity"] == EQUITY_URL

    def test_debt_like_equity_without_primary_uses_fallback(self):
        debt_equity = f"{ARCHIVE_BASE_URL}/content/debt/EQUITY_DEBT_L.csv"

        resolution = resolve_endpoints(
            [candidate(debt_equity, EndpointCategory.EQUITY, 10, 10)], DEFAULT_FALLBACK_URLS
        )

        assert resolution.urls["equity"] == DEFAULT_FALLBACK_URLS["equity"]
        assert resolution.backfilled["equity"] == "fallback"


class TestBuildEndpoints:
    """Test suite for the endpoint table."""

    def test_priorities_and_required_flags(self):
        table = build_endpoints(DEFAULT_FALLBACK_URLS)

        assert [e.category for e in sorted(table.values(), key=lambda e: e.priority)] == [
            EndpointCategory.EQUITY,
            EndpointCategory.SME,
            EndpointCategory.ETF,
            EndpointCategory.REITS,
            EndpointCategory.INVITS,
        ]
        assert [c for c, e in table.items() if e.required] == [EndpointCategory.EQUITY]
        assert table[EndpointCategory.SME].cache_key == cache_key_for(EndpointCategory.SME) == "nse_sme"

    def test_failure_counter_survives_unchanged_url(self):
        previous = build_endpoints(DEFAULT_FALLBACK_URLS)
        previous[EndpointCategory.EQUITY].consecutive_failures = 2
        previous[EndpointCategory.SME].consecutive_failures = 4
        urls = dict(DEFAULT_FALLBACK_URLS, sme=SME_ALTERNATIVE)

        table = build_endpoints(urls, previous)

        assert table[EndpointCategory.EQUITY].consecutive_failures == 2
        assert table[EndpointCategory.SME].consecutive_failures == 0


class TestResolverConfig:
    """Test suite for fallback and alternative URL settings."""

    def test_partial_fallback_table_keeps_defaults(self, monkeypatch):
        custom = "https://mirror.example.com/EQUITY_L.csv"
        monkeypatch.setenv("RESOLVER_FALLBACK_URLS", f'{{"equity": "{custom}"}}')

        config = ResolverConfig()
        table = build_endpoints(config.fallback_urls)

        assert config.fallback_urls["equity"] == custom
        assert config.fallback_urls["sme"] == DEFAULT_FALLBACK_URLS["sme"]
        assert tuple(table) == ENDPOINT_CATEGORIES
        assert table[EndpointCategory.EQUITY].url == custom

    def test_unknown_fallback_category_rejected(self):
        with pytest.raises(ValueError):
            ResolverConfig(fallback_urls={"bonds": DEBT_URL})

    def test_empty_fallback_url_rejected(self):
        with pytest.raises(ValueError):
            ResolverConfig(fallback_urls={"equity": " "})

    def test_unknown_alternative_category_rejected(self):
        with pytest.raises(ValueError):
            ResolverConfig(alternative_urls={"bonds": [DEBT_URL]})
        with pytest.raises(ValueError):
            ResolverConfig(volatile_categories=["bonds"])


class TestURLResolver:
    """Test suite for URLResolver."""

    def test_initial_table_is_fallback(self, http_client):
        resolver = make_resolver(http_client)

        assert resolver.url_source == "fallback"
        assert resolver.current_urls() == DEFAULT_FALLBACK_URLS
        assert isinstance(resolver.endpoints[EndpointCategory.EQUITY], EndpointDescriptor)

    async def test_discovery_resolves_from_listing_page(self, exchange, http_client):
        resolver = make_resolver(http_client)

        resolved = await resolver.get_urls()

        assert resolved.success
        assert resolved.source == "discovered"
        assert resolved.urls["equity"] == EQUITY_URL
        assert resolved.urls["sme"] == SME_URL
        assert resolved.urls["etf"] == ETF_URL
        assert resolved.discovered_at is not None
        assert exchange.calls(LISTING_PAGE_URL) == 1

    async def test_discovery_is_ttl_gated(self, exchange, http_client):
        clock = FakeClock()
        resolver = make_resolver(http_client, clock=clock)

        await resolver.get_urls()
        await resolver.get_urls()
        assert exchange.calls(LISTING_PAGE_URL) == 1

        clock.now += ResolverConfig().discovery_ttl_seconds
        await resolver.get_urls()
        assert exchange.calls(LISTING_PAGE_URL) == 2

    async def test_force_rediscovery_ignores_ttl(self, exchange, http_client):
        resolver = make_resolver(http_client)

        await resolver.get_urls()
        await resolver.force_rediscovery()

        assert exchange.calls(LISTING_PAGE_URL) == 2

    async def test_blocked_page_seeds_with_fallback_urls(self, exchange, http_client):
        """Test a 403 on the listing page still classifies the fallback table."""
        exchange.add(LISTING_PAGE_URL, httpx.Response(403))
        resolver = make_resolver(http_client)

        resolved = await resolver.get_urls()

        assert resolved.success
        assert resolved.source == "fallback"
        assert resolved.urls == DEFAULT_FALLBACK_URLS
        assert exchange.calls(EQUITY_URL, "GET") == 1
        assert resolver.candidates

    async def test_failing_discovery_returns_fallback(self, http_client):
        resolver = make_resolver(http_client, crawler=ExplodingCrawler())

        resolved = await resolver.get_urls()

        assert resolved.success is False
        assert resolved.source == "fallback"
        assert resolved.urls == DEFAULT_FALLBACK_URLS
        assert "crawler exploded" in resolved.error
        assert resolver.get_discovery_status()["last_error"] == "crawler exploded"

    async def test_probe_skips_stable_categories(self, exchange, http_client):
        resolver = make_resolver(http_client)

        assert await resolver.probe("equity", "https://example.test/missing.csv") == "https://example.test/missing.csv"
        assert exchange.requests == []

    async def test_probe_tries_alternatives(self, exchange, http_client):
        exchange.add(SME_URL, httpx.Response(404))
        exchange.add(SME_ALTERNATIVE, httpx.Response(200))
        resolver = make_resolver(http_client)

        url = await resolver.probe("sme", SME_URL)

        assert url == SME_ALTERNATIVE
        assert exchange.calls(SME_URL, "HEAD") == 1

    async def test_probe_keeps_primary_when_nothing_answers(self, exchange, http_client):
        exchange.add(SME_URL, httpx.Response(404))
        resolver = make_resolver(http_client)

        assert await resolver.probe("sme", SME_URL) == SME_URL

    async def test_validate_urls(self, exchange, http_client):
        missing = "https://example.test/missing.csv"
        resolver = make_resolver(http_client)

        report = await resolver.validate_urls({"equity": EQUITY_URL, "sme": missing})

        assert report["equity"]["valid"] is True
        assert report["equity"]["status"] == 200
        assert report["sme"] == {
            "url": missing,
            "valid": False,
            "status": 404,
            "error": f"{missing}: unexpected HTTP status 404",
        }

    async def test_discovery_status(self, http_client):
        resolver = make_resolver(http_client)

        before = resolver.get_discovery_status()
        await resolver.get_urls()
        after = resolver.get_discovery_status()

        assert before["last_discovery"] is None
        assert before["next_discovery"] is None
        assert after["url_source"] == "discovered"
        assert after["discovered_urls"]["equity"] == EQUITY_URL
        assert after["next_discovery"] > after["last_discovery"]
        assert after["candidates"] == 6
