"""Abstract interfaces defining contracts with external collaborators.

This module establishes the seams of the pipeline:
- Record stores (persistent store and fast cache)
- CSV blob cache
- Learning state used by the classifier
- Observer callbacks for progress and metrics
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .logging import get_logger

if TYPE_CHECKING:
    from stock_agent.models import CacheEntry, FetchResult, StockRecord

logger = get_logger(__name__)


class PipelineObserver:
    """Observer notified of pipeline events.

    Every hook is a no-op; subclasses override the ones they care about.
    Observers must not raise: the pipeline logs and ignores observer errors.
    """

    def on_download_success(
        self, category: str, lines: int, elapsed_ms: float, size_bytes: int
    ) -> None:
        """Called after a payload is downloaded and validated."""

    def on_download_error(self, category: str, error: Exception, attempt: int, max_attempts: int) -> None:
        """Called after each failed download attempt."""

    def on_cache_hit(self, category: str) -> None:
        """Called when a fresh cache entry replaces a download."""

    def on_cache_fallback(self, category: str) -> None:
        """Called when a stale cache entry is served after exhausted retries."""

    def on_classification(self, category: str, should_use: bool) -> None:
        """Called once per classified candidate URL."""

    def on_cycle_completed(self, result: FetchResult) -> None:
        """Called after a successful fetch cycle."""

    def on_cycle_failed(self, result: FetchResult) -> None:
        """Called after a failed fetch cycle."""


def notify_observers(observers: Iterable[PipelineObserver], hook: str, *args: Any) -> None:
    """Invoke one hook on every observer, logging and discarding observer errors."""
    for observer in observers:
        try:
            getattr(observer, hook)(*args)
        except Exception as e:
            logger.warning("Observer hook failed", hook=hook, observer=type(observer).__name__, error=str(e))


class RecordStore(ABC):
    """Contract for the persistent record store.

    Implementations:
        - ParquetRecordStore
    """

    @abstractmethod
    def put(self, records: list[StockRecord], metadata: dict[str, Any]) -> None:
        """Replace the stored record set."""

    @abstractmethod
    def get(self, symbol: str) -> StockRecord | None:
        """Find a record by (case-insensitive) symbol."""

    @abstractmethod
    def search(
        self, query: str, limit: int, exact_match: bool = False, case_sensitive: bool = False
    ) -> list[StockRecord]:
        """Find records whose symbol or name matches the query."""


class RecordCache(RecordStore):
    """Contract for the fast cache in front of the persistent store.

    Implementations:
        - RedisRecordCache
        - InMemoryRecordCache
    """

    @abstractmethod
    def get_category(self, category: str) -> list[StockRecord] | None:
        """Get the cached records of one category."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every cached record."""


class BlobCache(ABC):
    """Contract for the raw CSV payload cache.

    Implementations:
        - FileBlobCache
    """

    @abstractmethod
    def get(self, key: str) -> CacheEntry | None:
        """Get the last stored entry regardless of its age."""

    @abstractmethod
    def put(self, key: str, payload: str) -> CacheEntry:
        """Store a payload, overwriting any previous entry."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete one entry."""

    @abstractmethod
    def clear(self) -> int:
        """Delete every entry and return how many were removed."""

    @abstractmethod
    def status(self, key: str, max_age_seconds: float) -> dict[str, Any]:
        """Describe one entry: existence, validity, age, size, lines, checksum."""


@runtime_checkable
class LearningStore(Protocol):
    """Soft, session-scoped quality hints consulted by the classifier."""

    def mark_high_quality(self, url: str) -> None: ...

    def mark_low_quality(self, url: str) -> None: ...

    def record_parse_success(self, url: str) -> None: ...

    def record_parse_failure(self, url: str) -> None: ...

    def is_high_quality(self, url: str) -> bool: ...

    def is_low_quality(self, url: str) -> bool: ...

    def parsed_successfully(self, url: str) -> bool: ...

    def failed_to_parse(self, url: str) -> bool: ...

    def stats(self) -> dict[str, int]: ...
