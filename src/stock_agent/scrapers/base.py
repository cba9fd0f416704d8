"""Base scraper class shared by every component that talks to the exchange."""

from __future__ import annotations

import httpx

from stock_agent.core.config import BROWSER_USER_AGENT
from stock_agent.core.errors import TransportError
from stock_agent.core.logging import get_logger

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"
CSV_ACCEPT = "text/csv, application/csv, text/plain, */*"
DEFAULT_REFERER = "https://www.nseindia.com/market-data/securities-available-for-trading"


def create_http_client(max_connections: int = 10) -> httpx.AsyncClient:
    """Create the async client shared by the crawler, classifier, resolver and engine."""
    return httpx.AsyncClient(
        follow_redirects=True,
        limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=5),
    )


class BaseScraper:
    """Base class for all scrapers.

    Owns nothing but a reference to the shared HTTP client; every request
    carries browser-like headers and an explicit timeout.
    """

    def __init__(self, name: str, client: httpx.AsyncClient, user_agent: str = BROWSER_USER_AGENT):
        """Initialize scraper.

        Args:
            name: Scraper name for logging/metrics
            client: Shared async HTTP client
            user_agent: User-Agent sent with every request
        """
        self.name = name
        self.client = client
        self.user_agent = user_agent
        self.logger = get_logger(f"{__name__}.{name}")

    def browser_headers(
        self, accept: str = CSV_ACCEPT, referer: str | None = DEFAULT_REFERER, **extra: str
    ) -> dict[str, str]:
        """Build request headers that look like a desktop browser."""
        headers = {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "en-IN,en;q=0.9",
            "Accept-Encoding": "gzip, deflate, br",
            "DNT": "1",
            "Connection": "keep-alive",
        }
        if referer:
            headers["Referer"] = referer
        headers.update(extra)
        return headers

    async def fetch(
        self,
        url: str,
        timeout: float,
        headers: dict[str, str] | None = None,
        method: str = "GET",
        accept_status: tuple[int, ...] | None = None,
    ) -> httpx.Response:
        """Issue one request and normalize every failure into TransportError.

        Args:
            url: Target URL
            timeout: Per-request timeout in seconds
            headers: Request headers (defaults to browser CSV headers)
            method: HTTP method
            accept_status: Status codes treated as success (default: any 2xx)

        Raises:
            TransportError: On timeout, connection error or unaccepted status
        """
        try:
            response = await self.client.request(
                method, url, headers=headers or self.browser_headers(), timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise TransportError(url, f"timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(url, f"{type(e).__name__}: {e}") from e

        ok = (
            response.status_code in accept_status
            if accept_status is not None
            else response.is_success
        )
        if not ok:
            raise TransportError(
                url, f"unexpected HTTP status {response.status_code}", status_code=response.status_code
            )
        return response
