"""URL resolver.

Turns classified candidates into one download URL per endpoint category.
Discovery (crawl, classify, resolve) is TTL gated; any failure inside a
discovery cycle degrades to the hardcoded fallback table instead of
propagating.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from stock_agent.core.config import CrawlerConfig, ResolverConfig
from stock_agent.core.errors import TransportError
from stock_agent.models import (
    ENDPOINT_CATEGORIES,
    CSVCandidate,
    EndpointCategory,
    EndpointDescriptor,
    ResolvedUrls,
)
from stock_agent.scrapers.base import BaseScraper
from stock_agent.scrapers.nse.classifier import (
    CSVClassifier,
    is_debt_like_url,
    is_primary_equity_url,
    is_sme_equity_url,
)
from stock_agent.scrapers.nse.page_crawler import PageCrawler

# category -> (download priority, required, description)
ENDPOINT_SPECS: dict[EndpointCategory, tuple[int, bool, str]] = {
    EndpointCategory.EQUITY: (1, True, "Main board equity listings"),
    EndpointCategory.SME: (2, False, "SME platform listings"),
    EndpointCategory.ETF: (3, False, "Exchange traded funds"),
    EndpointCategory.REITS: (4, False, "Real estate investment trusts"),
    EndpointCategory.INVITS: (5, False, "Infrastructure investment trusts"),
}


def cache_key_for(category: EndpointCategory) -> str:
    return f"nse_{category.value}"


def build_endpoints(
    urls: Mapping[str, str],
    previous: Mapping[EndpointCategory, EndpointDescriptor] | None = None,
) -> dict[EndpointCategory, EndpointDescriptor]:
    """Build a fresh endpoint table from a category -> URL map.

    The failure counter survives only when the URL did not change.
    """
    previous = previous or {}
    table: dict[EndpointCategory, EndpointDescriptor] = {}
    for category in ENDPOINT_CATEGORIES:
        priority, required, description = ENDPOINT_SPECS[category]
        url = urls[category.value]
        old = previous.get(category)
        table[category] = EndpointDescriptor(
            category=category,
            url=url,
            cache_key=cache_key_for(category),
            priority=priority,
            required=required,
            description=description,
            consecutive_failures=old.consecutive_failures if old and old.url == url else 0,
        )
    return table


def is_recommended(candidate: CSVCandidate) -> bool:
    """Must-use (priority >= 9) or should-use (accepted with quality >= 7)."""
    if candidate.category == EndpointCategory.UNKNOWN:
        return False
    return candidate.priority >= 9 or (candidate.should_use and candidate.quality_score >= 7)


@dataclass
class Resolution:
    """Outcome of a single resolution pass."""

    urls: dict[str, str]
    selected: dict[str, CSVCandidate] = field(default_factory=dict)
    backfilled: dict[str, str] = field(default_factory=dict)  # category -> "candidate" | "fallback"


def _eligible_for_equity(candidate: CSVCandidate) -> bool:
    return not is_sme_equity_url(candidate.url) and not is_debt_like_url(candidate.url)


def resolve_endpoints(
    candidates: Sequence[CSVCandidate],
    fallback_urls: Mapping[str, str],
) -> Resolution:
    """Assign one URL per endpoint category.

    Candidates are ordered by priority * 10 + quality. Equity is sticky:
    the first eligible equity candidate wins and nothing replaces it in
    the same pass. Other categories are replaced only when unset or when
    the newcomer has priority > 8 or quality > 7. Categories still missing
    afterwards are backfilled from any accepted candidate of the same
    category, then from the fallback table.
    """
    ordered = sorted(
        (c for c in candidates if is_recommended(c)),
        key=lambda c: c.selection_score,
        reverse=True,
    )

    selected: dict[str, CSVCandidate] = {}
    for candidate in ordered:
        category = candidate.category.value
        if candidate.category == EndpointCategory.EQUITY:
            if is_sme_equity_url(candidate.url):
                continue
            if category in selected:
                continue
            selected[category] = candidate
            continue

        if category not in selected or candidate.priority > 8 or candidate.quality_score > 7:
            selected[category] = candidate

    resolution = Resolution(urls={}, selected=selected)
    for endpoint in ENDPOINT_CATEGORIES:
        category = endpoint.value
        if category in selected:
            resolution.urls[category] = selected[category].url
            continue

        loose = [
            c
            for c in candidates
            if c.category == endpoint
            and c.should_use
            and (endpoint != EndpointCategory.EQUITY or _eligible_for_equity(c))
        ]
        if loose:
            best = max(loose, key=lambda c: c.selection_score)
            resolution.urls[category] = best.url
            resolution.backfilled[category] = "candidate"
        else:
            resolution.urls[category] = fallback_urls[category]
            resolution.backfilled[category] = "fallback"

    _guard_equity(resolution, candidates, fallback_urls)
    return resolution


def _guard_equity(
    resolution: Resolution,
    candidates: Iterable[CSVCandidate],
    fallback_urls: Mapping[str, str],
) -> None:
    equity = EndpointCategory.EQUITY.value
    if not is_debt_like_url(resolution.urls[equity]):
        return
    primary = next((c.url for c in candidates if is_primary_equity_url(c.url)), None)
    resolution.urls[equity] = primary or fallback_urls[equity]
    resolution.backfilled[equity] = "candidate" if primary else "fallback"


class URLResolver(BaseScraper):
    """Keeps the endpoint table current.

    Example:
        >>> resolver = URLResolver(client, crawler, classifier)
        >>> resolved = await resolver.get_urls()
        >>> resolved.urls["equity"]
        'https://nsearchives.nseindia.com/content/equities/EQUITY_L.csv'
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        crawler: PageCrawler,
        classifier: CSVClassifier,
        config: ResolverConfig | None = None,
        crawler_config: CrawlerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        crawler_config = crawler_config or CrawlerConfig()
        super().__init__("url_resolver", client, user_agent=crawler_config.user_agent)
        self.config = config or ResolverConfig()
        self.crawler = crawler
        self.classifier = classifier
        self.clock = clock

        self.endpoints = build_endpoints(self.config.fallback_urls)
        self.url_source = "fallback"
        self.last_discovery: float | None = None
        self.last_error: str | None = None
        self.discovered: dict[str, str] = {}
        self.candidates: list[CSVCandidate] = []
        self._lock = asyncio.Lock()

    @property
    def fallback_urls(self) -> dict[str, str]:
        return dict(self.config.fallback_urls)

    def current_urls(self) -> dict[str, str]:
        return {category.value: endpoint.url for category, endpoint in self.endpoints.items()}

    def discovery_due(self) -> bool:
        if self.last_discovery is None:
            return True
        return self.clock() - self.last_discovery >= self.config.discovery_ttl_seconds

    async def get_urls(self, force: bool = False) -> ResolvedUrls:
        """Return the resolved URL per category, re-discovering when due.

        Never raises: a failing discovery cycle yields the fallback table.
        """
        async with self._lock:
            if not force and not self.discovery_due():
                return self._resolved()

            try:
                await self._discover()
            except Exception as e:
                self.logger.error("URL discovery failed, using fallback URLs", error=str(e))
                self.endpoints = build_endpoints(self.config.fallback_urls, self.endpoints)
                self.url_source = "fallback"
                self.last_error = str(e)
                self.last_discovery = self.clock()
                return ResolvedUrls(
                    success=False,
                    urls=self.current_urls(),
                    source=self.url_source,
                    discovered_at=self._discovered_at(),
                    error=str(e),
                )
            return self._resolved()

    async def force_rediscovery(self) -> ResolvedUrls:
        self.logger.info("Forcing URL rediscovery")
        return await self.get_urls(force=True)

    async def _discover(self) -> None:
        crawl = await self.crawler.discover_candidate_urls()
        urls = set(crawl.urls)
        seeded = not urls
        if seeded:
            self.logger.warning(
                "No CSV links discovered, classifying fallback URLs",
                outcome=crawl.outcome.value,
                error=crawl.error,
            )
            urls = set(self.config.fallback_urls.values())

        report = await self.classifier.analyze(urls)
        recommendations = self.classifier.recommend(report)
        resolution = resolve_endpoints(report.classified, self.config.fallback_urls)

        resolved: dict[str, str] = {}
        for category, url in resolution.urls.items():
            resolved[category] = await self.probe(category, url)

        self.candidates = list(report.classified)
        self.discovered = {c: cand.url for c, cand in resolution.selected.items()}
        self.endpoints = build_endpoints(resolved, self.endpoints)
        self.url_source = "fallback" if seeded else "discovered"
        self.last_error = crawl.error
        self.last_discovery = self.clock()

        self.logger.info(
            "URL discovery complete",
            source=self.url_source,
            candidates=len(urls),
            classified=len(report.classified),
            recommendations=recommendations.summary(),
            urls=resolved,
            backfilled=resolution.backfilled,
        )

    async def probe(self, category: str, url: str, force: bool = False) -> str:
        """Check a volatile category's URL exists, trying alternatives in turn.

        Returns the primary URL when nothing answers; the ingestion retry
        loop makes the final call.
        """
        if not force and category not in self.config.volatile_categories:
            return url

        if await self._exists(url):
            return url

        for alternative in self.config.alternative_urls.get(category, []):
            if alternative == url:
                continue
            if await self._exists(alternative):
                self.logger.info("Using alternative URL", category=category, url=alternative)
                return alternative

        self.logger.warning("No reachable URL for category, keeping primary", category=category, url=url)
        return url

    async def _exists(self, url: str) -> bool:
        try:
            await self.fetch(
                url,
                timeout=self.config.probe_timeout_seconds,
                headers=self.browser_headers(),
                method="HEAD",
            )
        except TransportError as e:
            self.logger.debug("HEAD probe failed", url=url, error=e.message)
            return False
        return True

    async def validate_urls(self, urls: Mapping[str, str] | None = None) -> dict[str, dict[str, Any]]:
        """HEAD-probe a category -> URL map and report what came back."""
        urls = dict(urls) if urls is not None else self.current_urls()

        async def _check(url: str) -> dict[str, Any]:
            try:
                response = await self.fetch(
                    url,
                    timeout=self.config.probe_timeout_seconds,
                    headers=self.browser_headers(),
                    method="HEAD",
                )
            except TransportError as e:
                return {"url": url, "valid": False, "status": e.status_code, "error": e.message}
            return {
                "url": url,
                "valid": True,
                "status": response.status_code,
                "content_type": response.headers.get("content-type"),
                "content_length": response.headers.get("content-length"),
            }

        results = await asyncio.gather(*(_check(url) for url in urls.values()))
        return dict(zip(urls.keys(), results))

    def get_discovery_status(self) -> dict[str, Any]:
        next_discovery = None
        if self.last_discovery is not None:
            next_discovery = datetime.fromtimestamp(
                self.last_discovery + self.config.discovery_ttl_seconds, tz=timezone.utc
            ).isoformat()
        discovered_at = self._discovered_at()
        return {
            "last_discovery": discovered_at.isoformat() if discovered_at else None,
            "next_discovery": next_discovery,
            "url_source": self.url_source,
            "current_urls": self.current_urls(),
            "discovered_urls": dict(self.discovered),
            "fallback_urls": self.fallback_urls,
            "candidates": len(self.candidates),
            "last_error": self.last_error,
        }

    def _discovered_at(self) -> datetime | None:
        if self.last_discovery is None:
            return None
        return datetime.fromtimestamp(self.last_discovery, tz=timezone.utc)

    def _resolved(self) -> ResolvedUrls:
        return ResolvedUrls(
            urls=self.current_urls(),
            source=self.url_source,
            discovered_at=self._discovered_at(),
        )
