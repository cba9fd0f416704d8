"""Tests for the ingestion engine."""

import time

import httpx
import pytest

from stock_agent.core.config import DEFAULT_FALLBACK_URLS
from stock_agent.core.errors import RequiredEndpointExhausted, ValidationError
from stock_agent.core.interfaces import PipelineObserver
from stock_agent.models import EndpointCategory, EndpointState
from stock_agent.scrapers.nse.ingestion import IngestionEngine, validate_payload
from stock_agent.scrapers.nse.resolver import build_endpoints
from stock_agent.storage.cache import FileBlobCache
from tests.fixtures.listings import EQUITY_CSV, EQUITY_URL, ETF_URL, REITS_URL, SME_CSV, SME_URL

TEN_DAYS = 10 * 24 * 60 * 60


class RecordingObserver(PipelineObserver):
    def __init__(self):
        self.events = []

    def on_download_success(self, category, lines, elapsed_ms, size_bytes):
        self.events.append(("success", category, lines))

    def on_download_error(self, category, error, attempt, max_attempts):
        self.events.append(("error", category, attempt, max_attempts))

    def on_cache_hit(self, category):
        self.events.append(("cache_hit", category))

    def on_cache_fallback(self, category):
        self.events.append(("cache_fallback", category))


@pytest.fixture
def cache(app_config):
    return FileBlobCache(app_config.ingestion.cache_dir)


@pytest.fixture
def stale_cache(app_config):
    """Cache writing entries dated ten days ago."""
    return FileBlobCache(app_config.ingestion.cache_dir, clock=lambda: time.time() - TEN_DAYS)


@pytest.fixture
def endpoints():
    return build_endpoints(DEFAULT_FALLBACK_URLS)


@pytest.fixture
def engine(http_client, cache, app_config, no_sleep):
    return IngestionEngine(http_client, cache, app_config.ingestion, sleep=no_sleep)


class TestValidatePayload:
    """Test suite for payload shape validation."""

    def test_accepts_listing(self):
        assert validate_payload(EQUITY_CSV) == 9

    def test_ignores_blank_lines(self):
        assert validate_payload("A,B,C\n\n1,2,3\n\n") == 2

    def test_rejects_header_only(self):
        with pytest.raises(ValidationError):
            validate_payload("SYMBOL,NAME,SERIES\n")

    def test_rejects_narrow_header(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payload("<html>\n<body>blocked</body>\n")
        assert "header" in exc_info.value.message


class TestIngestEndpoint:
    """Test suite for the per-endpoint state machine."""

    async def test_successful_download_is_cached(self, exchange, engine, cache, endpoints):
        endpoint = endpoints[EndpointCategory.EQUITY]

        outcome = await engine.ingest_endpoint(endpoint)

        assert outcome.state == EndpointState.CACHED
        assert outcome.history == [
            EndpointState.DOWNLOADING,
            EndpointState.VALIDATING,
            EndpointState.CACHED,
        ]
        assert outcome.payload == EQUITY_CSV
        assert outcome.attempts == 1
        assert cache.get("nse_equity").raw_payload == EQUITY_CSV
        request = exchange.requests[0]
        assert request.headers["Cache-Control"] == "no-cache"
        assert "Mozilla/5.0" in request.headers["User-Agent"]

    async def test_retries_with_exponential_backoff(self, exchange, engine, endpoints, no_sleep):
        exchange.add(EQUITY_URL, httpx.Response(500), httpx.Response(503), EQUITY_CSV)
        endpoint = endpoints[EndpointCategory.EQUITY]

        outcome = await engine.ingest_endpoint(endpoint)

        assert outcome.state == EndpointState.CACHED
        assert outcome.attempts == 3
        assert outcome.history.count(EndpointState.RETRY_WAIT) == 2
        assert len(no_sleep.delays) == 2
        assert 2.0 <= no_sleep.delays[0] <= 3.0
        assert 4.0 <= no_sleep.delays[1] <= 5.0
        assert endpoint.consecutive_failures == 0

    async def test_attempts_are_bounded(self, exchange, engine, endpoints, no_sleep):
        exchange.add(EQUITY_URL, httpx.Response(500))
        endpoint = endpoints[EndpointCategory.EQUITY]

        with pytest.raises(RequiredEndpointExhausted) as exc_info:
            await engine.ingest_endpoint(endpoint)

        assert exchange.calls(EQUITY_URL) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.category == "equity"
        assert endpoint.consecutive_failures == 3

    async def test_stale_cache_is_served_after_exhausted_retries(
        self, exchange, http_client, stale_cache, app_config, endpoints, no_sleep
    ):
        stale_cache.put("nse_equity", EQUITY_CSV)
        exchange.add(EQUITY_URL, httpx.ConnectError("connection refused"))
        observer = RecordingObserver()
        engine = IngestionEngine(
            http_client, stale_cache, app_config.ingestion, observers=[observer], sleep=no_sleep
        )

        outcome = await engine.ingest_endpoint(endpoints[EndpointCategory.EQUITY])

        assert outcome.state == EndpointState.CACHE_FALLBACK
        assert outcome.payload == EQUITY_CSV
        assert "ConnectError" in outcome.error
        assert ("cache_fallback", "equity") in observer.events
        assert [e for e in observer.events if e[0] == "error"] == [
            ("error", "equity", 1, 3),
            ("error", "equity", 2, 3),
            ("error", "equity", 3, 3),
        ]

    async def test_fresh_cache_skips_download(self, exchange, engine, cache, endpoints):
        cache.put("nse_equity", "SYMBOL,NAME,SERIES\nOLD,Old Co,EQ\n")

        outcome = await engine.ingest_endpoint(endpoints[EndpointCategory.EQUITY])

        assert outcome.state == EndpointState.CACHE_HIT
        assert outcome.payload.startswith("SYMBOL,NAME,SERIES")
        assert exchange.calls(EQUITY_URL) == 0

    async def test_force_refresh_bypasses_fresh_cache(self, exchange, engine, cache, endpoints):
        cache.put("nse_equity", "SYMBOL,NAME,SERIES\nOLD,Old Co,EQ\n")

        outcome = await engine.ingest_endpoint(endpoints[EndpointCategory.EQUITY], force_refresh=True)

        assert outcome.state == EndpointState.CACHED
        assert outcome.payload == EQUITY_CSV
        assert cache.get("nse_equity").raw_payload == EQUITY_CSV

    async def test_optional_endpoint_fails_without_raising(self, exchange, engine, endpoints):
        exchange.add(SME_URL, httpx.Response(503))

        outcome = await engine.ingest_endpoint(endpoints[EndpointCategory.SME])

        assert outcome.state == EndpointState.FAILED
        assert outcome.payload is None
        assert "OPTIONAL_ENDPOINT_EXHAUSTED" in outcome.error

    async def test_validation_failure_is_retried(self, exchange, engine, endpoints):
        exchange.add(EQUITY_URL, "<html>Access denied</html>", EQUITY_CSV)

        outcome = await engine.ingest_endpoint(endpoints[EndpointCategory.EQUITY])

        assert outcome.state == EndpointState.CACHED
        assert outcome.attempts == 2

    async def test_empty_body_is_retried(self, exchange, engine, endpoints):
        exchange.add(EQUITY_URL, httpx.Response(200, text="   \n"), EQUITY_CSV)

        outcome = await engine.ingest_endpoint(endpoints[EndpointCategory.EQUITY])

        assert outcome.attempts == 2
        assert outcome.payload == EQUITY_CSV


class TestIngest:
    """Test suite for batched ingestion."""

    async def test_all_endpoints(self, engine, endpoints):
        outcomes = await engine.ingest(endpoints.values())

        assert set(outcomes) == set(endpoints)
        assert all(o.state == EndpointState.CACHED for o in outcomes.values())
        assert outcomes[EndpointCategory.SME].payload == SME_CSV

    async def test_required_only(self, exchange, engine, endpoints):
        outcomes = await engine.ingest(endpoints.values(), include_optional=False)

        assert list(outcomes) == [EndpointCategory.EQUITY]
        assert exchange.calls(SME_URL) == 0

    async def test_required_failure_settles_batch_then_raises(self, exchange, engine, cache, endpoints):
        exchange.add(EQUITY_URL, httpx.Response(500))

        with pytest.raises(RequiredEndpointExhausted):
            await engine.ingest(endpoints.values())

        # same batch as equity completed, later batches never started
        assert cache.get("nse_sme") is not None
        assert exchange.calls(ETF_URL) == 1
        assert exchange.calls(REITS_URL) == 0

    async def test_download_order_follows_priority(self, exchange, engine, endpoints):
        await engine.ingest(reversed(list(endpoints.values())))

        urls = [str(r.url) for r in exchange.requests]
        assert urls.index(DEFAULT_FALLBACK_URLS["reits"]) > urls.index(EQUITY_URL)
        assert urls.index(DEFAULT_FALLBACK_URLS["invits"]) > urls.index(SME_URL)
