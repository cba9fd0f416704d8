"""Ingestion engine.

Downloads every resolved endpoint with bounded retries and exponential
backoff, validates the payload shape, caches successful downloads and falls
back to the last cache entry when retries run out.

Per-endpoint states within one cycle::

    PENDING -> DOWNLOADING -> VALIDATING -> CACHED
                    ^               |
                    +-- RETRY_WAIT <+
    (retries exhausted) -> CACHE_FALLBACK | FAILED
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from stock_agent.core.config import BROWSER_USER_AGENT, IngestionConfig
from stock_agent.core.errors import (
    OptionalEndpointExhausted,
    RequiredEndpointExhausted,
    StockAgentError,
    TransportError,
    ValidationError,
)
from stock_agent.core.interfaces import BlobCache, PipelineObserver, notify_observers
from stock_agent.models import EndpointCategory, EndpointDescriptor, EndpointState, IngestionOutcome
from stock_agent.scrapers.base import BaseScraper

MIN_LINES = 2
MIN_HEADER_FIELDS = 3


def validate_payload(payload: str) -> int:
    """Check a CSV payload has a header and at least one data line.

    Returns:
        Number of non-blank lines

    Raises:
        ValidationError: If the payload is too short or the header too narrow
    """
    lines = [line for line in payload.splitlines() if line.strip()]
    if len(lines) < MIN_LINES:
        raise ValidationError(
            f"CSV has {len(lines)} non-blank lines, expected at least {MIN_LINES}",
            details={"lines": len(lines)},
        )
    fields = lines[0].split(",")
    if len(fields) < MIN_HEADER_FIELDS:
        raise ValidationError(
            f"CSV header has {len(fields)} fields, expected at least {MIN_HEADER_FIELDS}",
            details={"header": lines[0][:200]},
        )
    return len(lines)


class IngestionEngine(BaseScraper):
    """Download, validate and cache the endpoints of one fetch cycle."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: BlobCache,
        config: IngestionConfig | None = None,
        observers: Sequence[PipelineObserver] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        user_agent: str = BROWSER_USER_AGENT,
    ) -> None:
        """Initialize engine.

        Args:
            client: Shared async HTTP client
            cache: CSV blob cache
            config: Retry, timeout and concurrency settings
            observers: Receivers of download/cache events
            sleep: Coroutine used between retries (tests pass a no-op)
            user_agent: User-Agent sent with every download
        """
        super().__init__("ingestion_engine", client, user_agent=user_agent)
        self.config = config or IngestionConfig()
        self.cache = cache
        self.observers = list(observers)
        self._sleep = sleep

    async def download(self, endpoint: EndpointDescriptor, outcome: IngestionOutcome) -> str:
        """One download attempt: GET, then shape validation.

        Raises:
            TransportError: On network failure, non-2xx status or empty body
            ValidationError: If the payload is not a plausible CSV
        """
        outcome.transition(EndpointState.DOWNLOADING)
        response = await self.fetch(
            endpoint.url,
            timeout=self.config.timeout_seconds,
            headers=self.browser_headers(**{"Cache-Control": "no-cache"}),
        )
        payload = response.text
        if not payload.strip():
            raise TransportError(endpoint.url, "empty response body", status_code=response.status_code)

        outcome.transition(EndpointState.VALIDATING)
        validate_payload(payload)
        return payload

    def _retrying(self, endpoint: EndpointDescriptor, outcome: IngestionOutcome) -> AsyncRetrying:
        def before_sleep(retry_state: RetryCallState) -> None:
            outcome.transition(EndpointState.RETRY_WAIT)
            self.logger.warning(
                "Retrying download",
                category=endpoint.category.value,
                attempt=retry_state.attempt_number,
                wait=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential_jitter(
                initial=self.config.retry_base_delay_seconds,
                max=self.config.retry_max_delay_seconds,
                jitter=self.config.retry_jitter_seconds,
            ),
            retry=retry_if_exception_type((TransportError, ValidationError)),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def ingest_endpoint(
        self, endpoint: EndpointDescriptor, force_refresh: bool = False
    ) -> IngestionOutcome:
        """Run one endpoint through the state machine.

        Raises:
            RequiredEndpointExhausted: If a required endpoint has neither a
                download nor any cache entry
        """
        outcome = IngestionOutcome(category=endpoint.category, url=endpoint.url, required=endpoint.required)
        category = endpoint.category.value

        if not force_refresh:
            entry = await asyncio.to_thread(self.cache.get, endpoint.cache_key)
            if entry is not None and entry.is_valid(self.config.cache_max_age_seconds):
                outcome.payload = entry.raw_payload
                outcome.transition(EndpointState.CACHE_HIT)
                notify_observers(self.observers, "on_cache_hit", category)
                self.logger.info(
                    "Using fresh cache entry",
                    category=category,
                    age_seconds=round(entry.age_seconds()),
                )
                return outcome

        started = time.monotonic()
        last_error: Exception | None = None
        try:
            async for attempt in self._retrying(endpoint, outcome):
                with attempt:
                    outcome.attempts = attempt.retry_state.attempt_number
                    try:
                        payload = await self.download(endpoint, outcome)
                    except (TransportError, ValidationError) as e:
                        endpoint.consecutive_failures += 1
                        notify_observers(
                            self.observers,
                            "on_download_error",
                            category,
                            e,
                            outcome.attempts,
                            self.config.max_retries,
                        )
                        raise
        except (TransportError, ValidationError) as e:
            last_error = e

        if last_error is None:
            endpoint.consecutive_failures = 0
            elapsed_ms = (time.monotonic() - started) * 1000
            await self._store(endpoint, payload)
            outcome.payload = payload
            outcome.transition(EndpointState.CACHED)
            notify_observers(
                self.observers,
                "on_download_success",
                category,
                len(payload.splitlines()),
                elapsed_ms,
                len(payload.encode("utf-8")),
            )
            self.logger.info(
                "Downloaded endpoint",
                category=category,
                attempts=outcome.attempts,
                elapsed_ms=round(elapsed_ms, 1),
            )
            return outcome

        return await self._fall_back(endpoint, outcome, last_error)

    async def _store(self, endpoint: EndpointDescriptor, payload: str) -> None:
        try:
            await asyncio.to_thread(self.cache.put, endpoint.cache_key, payload)
        except (OSError, StockAgentError) as e:
            self.logger.warning("Cache write failed", category=endpoint.category.value, error=str(e))

    async def _fall_back(
        self, endpoint: EndpointDescriptor, outcome: IngestionOutcome, error: Exception
    ) -> IngestionOutcome:
        category = endpoint.category.value
        entry = await asyncio.to_thread(self.cache.get, endpoint.cache_key)
        if entry is not None:
            outcome.payload = entry.raw_payload
            outcome.error = str(error)
            outcome.transition(EndpointState.CACHE_FALLBACK)
            notify_observers(self.observers, "on_cache_fallback", category)
            self.logger.warning(
                "Retries exhausted, serving cached payload",
                category=category,
                attempts=outcome.attempts,
                cache_age_seconds=round(entry.age_seconds()),
                error=str(error),
            )
            return outcome

        outcome.transition(EndpointState.FAILED)
        message = str(error)
        if endpoint.required:
            self.logger.error("Required endpoint exhausted", category=category, error=message)
            raise RequiredEndpointExhausted(category, outcome.attempts, message) from error

        outcome.error = str(OptionalEndpointExhausted(category, outcome.attempts, message))
        self.logger.warning("Optional endpoint exhausted", category=category, error=message)
        return outcome

    async def ingest(
        self,
        endpoints: Iterable[EndpointDescriptor],
        force_refresh: bool = False,
        include_optional: bool = True,
    ) -> dict[EndpointCategory, IngestionOutcome]:
        """Ingest endpoints in priority order, in batches of the concurrency limit.

        Each batch settles completely before the next one starts.

        Raises:
            RequiredEndpointExhausted: Once the batch containing the failed
                required endpoint has settled
        """
        ordered = sorted(
            (e for e in endpoints if include_optional or e.required),
            key=lambda e: e.priority,
        )
        batch_size = self.config.max_concurrent_downloads
        outcomes: dict[EndpointCategory, IngestionOutcome] = {}

        for start in range(0, len(ordered), batch_size):
            batch = ordered[start : start + batch_size]
            results = await asyncio.gather(
                *(self.ingest_endpoint(e, force_refresh) for e in batch),
                return_exceptions=True,
            )
            fatal: RequiredEndpointExhausted | None = None
            for endpoint, result in zip(batch, results):
                if isinstance(result, RequiredEndpointExhausted):
                    fatal = fatal or result
                elif isinstance(result, BaseException):
                    raise result
                else:
                    outcomes[endpoint.category] = result
            if fatal is not None:
                raise fatal

        return outcomes
