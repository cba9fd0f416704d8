"""Query and health facade over the listings pipeline.

``StockDataService`` wires the crawler, classifier, resolver, ingestion
engine, normalizer and record stores together and exposes the operational
surface: fetch-all, search, get-by-symbol, forced refresh, cache status and
health. None of its operations raise for routine network or data problems;
failures come back as result models with ``success=False``.

Usage:
    async with StockDataService() as service:
        result = await service.fetch_all()
        lookup = await service.get_by_symbol("RELIANCE")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from stock_agent.core import (
    AppConfig,
    BlobCache,
    LearningStore,
    PipelineObserver,
    RecordCache,
    RecordStore,
    RequiredEndpointExhausted,
    StorageUnavailable,
    ValidationError,
    get_config,
    get_logger,
    notify_observers,
    set_trace_id,
)
from stock_agent.core.config import StorageConfig
from stock_agent.models import (
    EndpointCategory,
    EndpointState,
    FetchResult,
    IngestionOutcome,
    LookupResult,
    ResolvedUrls,
    SearchResult,
    StockRecord,
)
from stock_agent.parsers import ListingParser, deduplicate_records
from stock_agent.scrapers import create_http_client
from stock_agent.scrapers.nse import (
    ClassificationReport,
    CSVClassifier,
    IngestionEngine,
    PageCrawler,
    URLResolver,
)
from stock_agent.storage import (
    FileBlobCache,
    InMemoryRecordCache,
    ParquetRecordStore,
    RedisRecordCache,
    search_records,
)

logger = get_logger(__name__)

SOURCE_MEMORY = "MEMORY"
SOURCE_CACHE = "CACHE"
SOURCE_STORE = "STORE"
SOURCE_LIVE = "LIVE_FETCH"


@dataclass
class ServiceMetrics(PipelineObserver):
    """In-process counters behind the health report."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    cache_fallbacks: int = 0
    lookups: int = 0
    lookup_hits: int = 0
    total_response_ms: float = 0.0
    responses: int = 0
    retries: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None
    started_at: float = field(default_factory=time.time)

    def on_download_success(
        self, category: str, lines: int, elapsed_ms: float, size_bytes: int
    ) -> None:
        self.total_requests += 1
        self.successful_requests += 1
        self.total_response_ms += elapsed_ms
        self.responses += 1

    def on_download_error(self, category: str, error: Exception, attempt: int, max_attempts: int) -> None:
        self.total_requests += 1
        self.failed_requests += 1
        self.last_error = str(error)
        if attempt < max_attempts:
            self.retries[category] = self.retries.get(category, 0) + 1

    def on_cache_hit(self, category: str) -> None:
        self.cache_hits += 1

    def on_cache_fallback(self, category: str) -> None:
        self.cache_fallbacks += 1

    def record_lookup(self, hit: bool) -> None:
        self.lookups += 1
        if hit:
            self.lookup_hits += 1

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0

    @property
    def cache_hit_rate(self) -> float:
        served = self.cache_hits + self.successful_requests
        return self.cache_hits / served if served else 0.0

    @property
    def average_response_ms(self) -> float:
        return self.total_response_ms / self.responses if self.responses else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.success_rate, 4),
            "cache_hits": self.cache_hits,
            "cache_fallbacks": self.cache_fallbacks,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "lookups": self.lookups,
            "lookup_hits": self.lookup_hits,
            "average_response_ms": round(self.average_response_ms, 1),
            "retries": dict(self.retries),
            "last_error": self.last_error,
            "uptime_seconds": round(time.time() - self.started_at),
        }


def build_record_store(config: StorageConfig) -> RecordStore | None:
    return ParquetRecordStore(config.parquet_path) if config.parquet_path else None


def build_fast_cache(config: StorageConfig) -> RecordCache:
    if config.redis_url:
        return RedisRecordCache(config.redis_url, ttl_seconds=config.cache_ttl_seconds)
    return InMemoryRecordCache(ttl_seconds=config.cache_ttl_seconds)


def _fetch_source(outcomes: Iterable[IngestionOutcome]) -> str:
    states = [o.state for o in outcomes if o.payload is not None]
    if EndpointState.CACHE_FALLBACK in states:
        return "fallback"
    if states and all(state == EndpointState.CACHE_HIT for state in states):
        return "cache"
    return "live"


class StockDataService:
    """Facade exposing fetch, lookup, search and operational status."""

    def __init__(
        self,
        config: AppConfig | None = None,
        client: httpx.AsyncClient | None = None,
        store: RecordStore | None = None,
        fast_cache: RecordCache | None = None,
        blob_cache: BlobCache | None = None,
        learning: LearningStore | None = None,
        observers: Sequence[PipelineObserver] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            config: Application configuration (default: global config)
            client: Shared HTTP client; one is created and owned when omitted
            store: Persistent record store (default: from storage config)
            fast_cache: Fast record cache (default: from storage config)
            blob_cache: CSV blob cache (default: files under ingestion.cache_dir)
            learning: Classifier learning state (default: in-memory)
            observers: Extra pipeline observers, e.g. PrometheusObserver
            sleep: Coroutine used between download retries
        """
        self.config = config or get_config()
        self._owns_client = client is None
        self.client = client or create_http_client()

        self.store = store if store is not None else build_record_store(self.config.storage)
        self.fast_cache = fast_cache if fast_cache is not None else build_fast_cache(self.config.storage)
        self.blob_cache = (
            blob_cache if blob_cache is not None else FileBlobCache(self.config.ingestion.cache_dir)
        )

        self.metrics = ServiceMetrics()
        self.observers: list[PipelineObserver] = [self.metrics, *observers]

        self.crawler = PageCrawler(self.client, self.config.crawler)
        self.classifier = CSVClassifier(
            self.client,
            self.config.classifier,
            learning=learning,
            crawler_config=self.config.crawler,
            observers=self.observers,
        )
        self.resolver = URLResolver(
            self.client,
            self.crawler,
            self.classifier,
            self.config.resolver,
            crawler_config=self.config.crawler,
        )
        self.engine = IngestionEngine(
            self.client,
            self.blob_cache,
            self.config.ingestion,
            observers=self.observers,
            sleep=sleep,
            user_agent=self.config.crawler.user_agent,
        )
        self.parser = ListingParser()

        self._records: dict[str, StockRecord] = {}
        self._record_list: list[StockRecord] = []
        self.last_result: FetchResult | None = None

    async def __aenter__(self) -> StockDataService:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # Fetch cycle
    # ------------------------------------------------------------------

    async def fetch_all(self, force_refresh: bool = False, include_optional: bool = True) -> FetchResult:
        """Run one discovery + ingestion + normalization cycle.

        Args:
            force_refresh: Download even when a fresh cache entry exists
            include_optional: Also ingest the optional categories

        Returns:
            FetchResult; ``success`` is False only when a required endpoint
            has neither a download nor a cache entry, or nothing parsed
        """
        trace_id = set_trace_id()
        started = time.monotonic()
        diagnostics: list[str] = []
        logger.info("Fetch cycle started", force_refresh=force_refresh, include_optional=include_optional)

        resolved = await self.resolver.get_urls()
        if resolved.error:
            diagnostics.append(f"discovery: {resolved.error}")

        endpoints = list(self.resolver.endpoints.values())
        try:
            outcomes = await self.engine.ingest(endpoints, force_refresh, include_optional)
        except RequiredEndpointExhausted as e:
            url = self.resolver.endpoints[EndpointCategory(e.category)].url
            self.classifier.report_parse_result(url, success=False, error=e.message)
            return self._fail(str(e), started, resolved, trace_id, diagnostics)

        fetched_at = datetime.now(timezone.utc)
        records: list[StockRecord] = []
        breakdown: dict[str, int] = {}
        for category, outcome in outcomes.items():
            parsed = await self._normalize(outcome, fetched_at, diagnostics)
            breakdown[category.value] = len(parsed)
            records.extend(parsed)

        merged = deduplicate_records(records)
        if not merged:
            return self._fail("No valid records parsed", started, resolved, trace_id, diagnostics, outcomes)

        self._record_list = merged
        self._records = {r.symbol.upper(): r for r in merged}

        metadata = {
            "discovery_id": trace_id,
            "fetched_at": fetched_at.isoformat(),
            "breakdown": breakdown,
            "url_source": resolved.source,
        }
        await self._persist(merged, metadata, diagnostics)

        result = FetchResult(
            success=True,
            stocks=merged,
            count=len(merged),
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            breakdown=breakdown,
            fetched_at=fetched_at,
            source=_fetch_source(outcomes.values()),
            url_source=resolved.source,
            discovery_id=trace_id,
            endpoint_outcomes={c.value: o.state.value for c, o in outcomes.items()},
            diagnostics=diagnostics,
        )
        self.last_result = result
        notify_observers(self.observers, "on_cycle_completed", result)
        logger.info(
            "Fetch cycle completed",
            records=result.count,
            source=result.source,
            breakdown=breakdown,
            duration_ms=result.duration_ms,
            diagnostics=len(diagnostics),
        )
        return result

    async def force_refresh(self) -> FetchResult:
        """Re-discover URLs and download everything, ignoring fresh cache entries."""
        await self.resolver.force_rediscovery()
        return await self.fetch_all(force_refresh=True)

    async def _normalize(
        self, outcome: IngestionOutcome, fetched_at: datetime, diagnostics: list[str]
    ) -> list[StockRecord]:
        category = outcome.category.value
        if outcome.payload is None:
            diagnostics.append(outcome.error or f"{category}: no data")
            self.classifier.report_parse_result(outcome.url, success=False, error=outcome.error)
            return []

        if outcome.state == EndpointState.CACHE_FALLBACK:
            diagnostics.append(f"{category}: served from stale cache ({outcome.error})")

        try:
            parsed = await asyncio.to_thread(self.parser.parse, outcome.payload, outcome.category, fetched_at)
        except ValidationError as e:
            diagnostics.append(f"{category}: {e.message}")
            self.classifier.report_parse_result(outcome.url, success=False, error=e.message)
            return []

        self.classifier.report_parse_result(outcome.url, success=bool(parsed), record_count=len(parsed))
        return parsed

    async def _persist(
        self, records: list[StockRecord], metadata: dict[str, Any], diagnostics: list[str]
    ) -> None:
        targets: list[tuple[str, RecordStore]] = [("fast_cache", self.fast_cache)]
        if self.store is not None:
            targets.append(("store", self.store))

        for name, target in targets:
            try:
                await asyncio.to_thread(target.put, records, metadata)
            except StorageUnavailable as e:
                logger.warning("Record store unavailable", target=name, error=str(e))
                diagnostics.append(f"{name}: {e.message}")

    def _fail(
        self,
        error: str,
        started: float,
        resolved: ResolvedUrls,
        trace_id: str,
        diagnostics: list[str],
        outcomes: dict[EndpointCategory, IngestionOutcome] | None = None,
    ) -> FetchResult:
        self.metrics.last_error = error
        result = FetchResult(
            success=False,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            url_source=resolved.source,
            discovery_id=trace_id,
            endpoint_outcomes={c.value: o.state.value for c, o in (outcomes or {}).items()},
            diagnostics=diagnostics,
            error=error,
        )
        self.last_result = result
        notify_observers(self.observers, "on_cycle_failed", result)
        logger.error("Fetch cycle failed", error=error)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_by_symbol(self, symbol: str) -> LookupResult:
        """Look a symbol up in memory, fast cache, store, then a live fetch."""
        key = (symbol or "").strip().upper()
        if not key:
            return LookupResult(success=False, error="Symbol is required")

        record = self._records.get(key)
        if record is not None:
            self.metrics.record_lookup(True)
            return LookupResult(success=True, stock=record, source=SOURCE_MEMORY)

        for source, layer in self._layers():
            try:
                record = await asyncio.to_thread(layer.get, key)
            except StorageUnavailable as e:
                logger.warning("Lookup layer unavailable", layer=source, error=str(e))
                continue
            if record is not None:
                self.metrics.record_lookup(True)
                return LookupResult(success=True, stock=record, source=source)

        self.metrics.record_lookup(False)
        if not self._records:
            result = await self.fetch_all()
            if not result.success:
                return LookupResult(success=False, error=result.error)
            record = self._records.get(key)
            if record is not None:
                return LookupResult(success=True, stock=record, source=SOURCE_LIVE)

        return LookupResult(success=False, error=f"Stock {key} not found")

    async def search(
        self,
        query: str,
        limit: int | None = None,
        exact_match: bool = False,
        case_sensitive: bool = False,
    ) -> SearchResult:
        """Search symbols and names, ordered by relevance."""
        query = (query or "").strip()
        if not query:
            return SearchResult(success=False, query=query, error="Query is required")

        limit = limit if limit and limit > 0 else self.config.search.default_limit
        limit = min(limit, self.config.search.max_limit)

        if self._record_list:
            stocks = search_records(self._record_list, query, limit, exact_match, case_sensitive)
            return SearchResult(success=True, stocks=stocks, count=len(stocks), query=query, source=SOURCE_MEMORY)

        for source, layer in self._layers():
            try:
                stocks = await asyncio.to_thread(layer.search, query, limit, exact_match, case_sensitive)
            except StorageUnavailable as e:
                logger.warning("Search layer unavailable", layer=source, error=str(e))
                continue
            if stocks:
                return SearchResult(success=True, stocks=stocks, count=len(stocks), query=query, source=source)

        result = await self.fetch_all()
        if not result.success:
            return SearchResult(success=False, query=query, error=result.error)
        stocks = search_records(self._record_list, query, limit, exact_match, case_sensitive)
        return SearchResult(success=True, stocks=stocks, count=len(stocks), query=query, source=SOURCE_LIVE)

    def _layers(self) -> list[tuple[str, RecordStore]]:
        layers: list[tuple[str, RecordStore]] = [(SOURCE_CACHE, self.fast_cache)]
        if self.store is not None:
            layers.append((SOURCE_STORE, self.store))
        return layers

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_cache_status(self) -> dict[str, Any]:
        """Per-endpoint cache entry status."""
        max_age = self.config.ingestion.cache_max_age_seconds
        status: dict[str, Any] = {}
        for category, endpoint in self.resolver.endpoints.items():
            status[category.value] = {
                "url": endpoint.url,
                "cache_key": endpoint.cache_key,
                "required": endpoint.required,
                **self.blob_cache.status(endpoint.cache_key, max_age),
            }
        return status

    def clear_cache(self) -> dict[str, Any]:
        """Drop cached CSV payloads, the fast cache and the in-memory set."""
        removed = self.blob_cache.clear()
        fast_cache_cleared = True
        try:
            self.fast_cache.clear()
        except StorageUnavailable as e:
            logger.warning("Fast cache unavailable while clearing", error=str(e))
            fast_cache_cleared = False
        self._records = {}
        self._record_list = []
        logger.info("Caches cleared", blobs=removed)
        return {"blobs_removed": removed, "fast_cache_cleared": fast_cache_cleared}

    def get_health_status(self) -> dict[str, Any]:
        """Health report: overall status, counters, endpoints and discovery."""
        endpoints = {
            category.value: {
                "url": endpoint.url,
                "required": endpoint.required,
                "consecutive_failures": endpoint.consecutive_failures,
                "retries": self.metrics.retries.get(category.value, 0),
            }
            for category, endpoint in self.resolver.endpoints.items()
        }

        last = self.last_result
        if last is not None and not last.success and not self._records:
            status = "unhealthy"
        elif (last is not None and (not last.success or last.diagnostics)) or any(
            e["consecutive_failures"] for e in endpoints.values()
        ):
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "records": len(self._records),
            "last_fetch": {
                "success": last.success,
                "fetched_at": last.fetched_at.isoformat(),
                "source": last.source,
                "count": last.count,
                "error": last.error,
            }
            if last is not None
            else None,
            "metrics": self.metrics.to_dict(),
            "endpoints": endpoints,
            "discovery": self.resolver.get_discovery_status(),
            "learning": self.classifier.learning_stats(),
        }

    def get_discovery_status(self) -> dict[str, Any]:
        return self.resolver.get_discovery_status()

    async def force_rediscovery(self) -> ResolvedUrls:
        return await self.resolver.force_rediscovery()

    async def validate_urls(self, urls: dict[str, str] | None = None) -> dict[str, dict[str, Any]]:
        return await self.resolver.validate_urls(urls)

    async def classify_urls(self, urls: Iterable[str]) -> ClassificationReport:
        return await self.classifier.analyze(urls)
