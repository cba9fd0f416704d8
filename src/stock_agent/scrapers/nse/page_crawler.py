"""Listing page crawler.

Extracts every URL that looks like a CSV resource from the exchange's
"securities available for trading" page.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup

from stock_agent.core.config import CrawlerConfig
from stock_agent.core.errors import TransportError
from stock_agent.scrapers.base import HTML_ACCEPT, BaseScraper

CSV_URL_PATTERN = re.compile(r"https?://[^\"'\s<>()]+?\.csv(?![\w.])", re.IGNORECASE)


class CrawlOutcome(str, Enum):
    """How a crawl ended."""

    SUCCESS = "success"
    BLOCKED = "blocked"  # HTTP 403, the exchange is filtering the request
    FAILED = "failed"


@dataclass
class CrawlResult:
    """CSV URLs found on the listing page."""

    urls: set[str] = field(default_factory=set)
    outcome: CrawlOutcome = CrawlOutcome.SUCCESS
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == CrawlOutcome.SUCCESS


def extract_csv_urls(html: str, base_url: str) -> set[str]:
    """Collect CSV links from anchors and from a raw scan of the page body.

    Links buried inside script blocks never show up as anchors, so the
    regex pass runs over the whole document independently of the markup.
    """
    urls: set[str] = set()

    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not urlsplit(href).path.lower().endswith(".csv"):
            continue
        urls.add(href if href.lower().startswith("http") else urljoin(base_url, href))

    urls.update(match.group(0) for match in CSV_URL_PATTERN.finditer(html))
    return urls


class PageCrawler(BaseScraper):
    """Crawler for the securities listing page."""

    def __init__(self, client: httpx.AsyncClient, config: CrawlerConfig | None = None) -> None:
        self.config = config or CrawlerConfig()
        super().__init__("page_crawler", client, user_agent=self.config.user_agent)

    async def discover_candidate_urls(self, page_url: str | None = None) -> CrawlResult:
        """Fetch the listing page and return every CSV URL found on it.

        Never raises: a blocked or failed fetch yields an empty set with the
        matching outcome, which callers treat as "no new information".
        """
        page_url = page_url or self.config.listing_page_url
        headers = self.browser_headers(
            accept=HTML_ACCEPT,
            referer=None,
            **{"Upgrade-Insecure-Requests": "1", "Cache-Control": "no-cache", "Pragma": "no-cache"},
        )

        self.logger.info("Crawling listing page for CSV links", url=page_url)
        try:
            response = await self.fetch(page_url, timeout=self.config.timeout_seconds, headers=headers)
        except TransportError as e:
            if e.status_code == 403:
                self.logger.warning("Listing page blocked", url=page_url, status=403)
                return CrawlResult(
                    outcome=CrawlOutcome.BLOCKED, error="Access forbidden - exchange blocking requests"
                )
            self.logger.warning("Listing page crawl failed", url=page_url, error=str(e))
            return CrawlResult(outcome=CrawlOutcome.FAILED, error=str(e))

        base_url = self.config.archive_base_url.rstrip("/") + "/"
        urls = extract_csv_urls(response.text, base_url)
        self.logger.info("Found CSV links on listing page", url=page_url, count=len(urls))
        return CrawlResult(urls=urls)
