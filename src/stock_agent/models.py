"""Domain types and response models.

Internal pipeline state uses dataclasses; everything returned across the
facade boundary is a pydantic model so it can be dumped to JSON by the CLI
and by transports layered on top.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EndpointCategory(str, Enum):
    """Category of a securities listing CSV."""

    EQUITY = "equity"
    SME = "sme"
    ETF = "etf"
    REITS = "reits"
    INVITS = "invits"
    NEW_LISTINGS = "new_listings"
    DEBT = "debt"
    DELISTED = "delisted"
    NAME_CHANGES = "name_changes"
    SYMBOL_CHANGES = "symbol_changes"
    UNKNOWN = "unknown"


# Output categories that always receive a resolved URL, in download priority order
ENDPOINT_CATEGORIES: tuple[EndpointCategory, ...] = (
    EndpointCategory.EQUITY,
    EndpointCategory.SME,
    EndpointCategory.ETF,
    EndpointCategory.REITS,
    EndpointCategory.INVITS,
)


class EndpointState(str, Enum):
    """Per-endpoint ingestion state within one fetch cycle."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    RETRY_WAIT = "retry_wait"
    CACHED = "cached"  # downloaded, validated and written to cache
    CACHE_HIT = "cache_hit"  # fresh cache entry served, no download
    CACHE_FALLBACK = "cache_fallback"  # retries exhausted, last cache entry served
    FAILED = "failed"


@dataclass
class EndpointDescriptor:
    """One downloadable output category.

    Attributes:
        category: Output category
        url: Currently resolved download URL
        cache_key: Key of the CSV blob cache entry
        priority: Download order (lower first)
        required: Whether the cycle fails without this endpoint
        consecutive_failures: Failed attempts since the last success
    """

    category: EndpointCategory
    url: str
    cache_key: str
    priority: int
    required: bool
    description: str = ""
    consecutive_failures: int = 0


@dataclass
class CSVCandidate:
    """Classification of one discovered CSV URL."""

    url: str
    category: EndpointCategory
    priority: int
    quality_score: float
    confidence: float
    should_use: bool
    sampled_headers: tuple[str, ...] = ()
    estimated_row_count: int = 0
    description: str = ""
    matched_pattern: Optional[str] = None
    file_size: Optional[int] = None
    last_modified: Optional[str] = None
    error: Optional[str] = None

    @property
    def selection_score(self) -> float:
        """Ordering key used by the resolver: priority dominates, quality breaks ties."""
        return self.priority * 10 + self.quality_score

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "category": self.category.value,
            "priority": self.priority,
            "quality_score": self.quality_score,
            "confidence": self.confidence,
            "should_use": self.should_use,
            "sampled_headers": list(self.sampled_headers),
            "estimated_row_count": self.estimated_row_count,
            "description": self.description,
            "error": self.error,
        }


@dataclass(frozen=True)
class CacheEntry:
    """Raw CSV payload persisted after a successful download."""

    raw_payload: str
    timestamp: float
    size_bytes: int
    line_count: int
    checksum: str

    def age_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def is_valid(self, max_age_seconds: float, now: float | None = None) -> bool:
        """An entry is valid while it is younger than the configured max age."""
        return self.age_seconds(now) < max_age_seconds


@dataclass
class IngestionOutcome:
    """Terminal result of one endpoint in one ingestion cycle."""

    category: EndpointCategory
    url: str
    required: bool
    state: EndpointState = EndpointState.PENDING
    payload: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    history: list[EndpointState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.payload is not None

    def transition(self, state: EndpointState) -> None:
        self.history.append(state)
        self.state = state


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockRecord(BaseModel):
    """Canonical listed security."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Trading symbol, uppercased")
    name: str = Field(..., description="Company or security name")
    series: Optional[str] = None
    listing_date: Optional[str] = Field(None, description="ISO date when parseable")
    isin: Optional[str] = None
    face_value: Optional[float] = None
    paid_up_value: Optional[float] = None
    market_lot: Optional[int] = None
    underlying: Optional[str] = None
    category: str
    source: str
    last_updated: datetime = Field(default_factory=_utcnow)


class FetchResult(BaseModel):
    """Outcome of a fetch-all cycle."""

    success: bool
    stocks: list[StockRecord] = Field(default_factory=list)
    count: int = 0
    duration_ms: float = 0.0
    breakdown: dict[str, int] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=_utcnow)
    source: str = "live"
    url_source: Optional[str] = None
    discovery_id: Optional[str] = None
    endpoint_outcomes: dict[str, str] = Field(default_factory=dict)
    diagnostics: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class LookupResult(BaseModel):
    """Outcome of a get-by-symbol call."""

    success: bool
    stock: Optional[StockRecord] = None
    source: Optional[str] = None
    error: Optional[str] = None


class SearchResult(BaseModel):
    """Outcome of a search call."""

    success: bool
    stocks: list[StockRecord] = Field(default_factory=list)
    count: int = 0
    query: str = ""
    source: Optional[str] = None
    error: Optional[str] = None


class ResolvedUrls(BaseModel):
    """One URL per endpoint category, plus where the mapping came from."""

    success: bool = True
    urls: dict[str, str]
    source: str
    discovered_at: Optional[datetime] = None
    error: Optional[str] = None
