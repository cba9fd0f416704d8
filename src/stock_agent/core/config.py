"""Unified application configuration with environment support.

Each pipeline component gets its own validated settings object, composed into
a single ``AppConfig`` that is constructed once at startup.

Configuration hierarchy:
    1. Environment variables (highest priority)
    2. .env file
    3. Built-in defaults
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
)

ARCHIVE_BASE_URL = "https://nsearchives.nseindia.com"

DEFAULT_FALLBACK_URLS: dict[str, str] = {
    "equity": f"{ARCHIVE_BASE_URL}/content/equities/EQUITY_L.csv",
    "sme": f"{ARCHIVE_BASE_URL}/emerge/corporates/content/SME_EQUITY_L.csv",
    "etf": f"{ARCHIVE_BASE_URL}/content/equities/eq_etfseclist.csv",
    "reits": f"{ARCHIVE_BASE_URL}/content/equities/REITS_L.csv",
    "invits": f"{ARCHIVE_BASE_URL}/content/equities/INVITS_L.csv",
}

DEFAULT_ALTERNATIVE_URLS: dict[str, list[str]] = {
    "sme": [
        f"{ARCHIVE_BASE_URL}/emerge/corporates/content/SME_EQUITY_L.csv",
        "https://www.nseindia.com/emerge/corporates/content/SME_EQUITY_L.csv",
        f"{ARCHIVE_BASE_URL}/content/equities/SME_EQUITY_L.csv",
    ],
}


class Environment(str, Enum):
    """Deployment environment."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


# ============================================================================
# Discovery Configuration
# ============================================================================


class CrawlerConfig(BaseSettings):
    """Listing page crawler configuration."""

    listing_page_url: str = Field(
        default="https://www.nseindia.com/market-data/securities-available-for-trading",
        description="Page listing the downloadable securities CSV files",
    )
    archive_base_url: str = Field(
        default=ARCHIVE_BASE_URL,
        description="Host used to resolve relative CSV links",
    )
    timeout_seconds: float = Field(default=15.0, gt=0, le=120, description="Page fetch timeout")
    user_agent: str = Field(default=BROWSER_USER_AGENT, description="HTTP User-Agent header")

    model_config = SettingsConfigDict(env_prefix="CRAWLER_", extra="allow")


class ClassifierConfig(BaseSettings):
    """CSV classifier and content sampling configuration."""

    sample_bytes: int = Field(
        default=2048,
        ge=256,
        le=65536,
        description="Byte range requested when sampling a candidate CSV",
    )
    sample_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    max_concurrent_samples: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Sampling requests in flight during one discovery cycle",
    )
    header_match_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Minimum header pattern coverage for a header based match",
    )
    high_quality_row_threshold: int = Field(default=100, ge=1)
    low_quality_row_threshold: int = Field(default=5, ge=0)

    model_config = SettingsConfigDict(env_prefix="CLASSIFIER_", extra="allow")


class ResolverConfig(BaseSettings):
    """URL resolver configuration."""

    discovery_ttl_seconds: int = Field(
        default=24 * 60 * 60,
        ge=60,
        description="Minimum age of a discovery result before re-discovering",
    )
    probe_timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    fallback_urls: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FALLBACK_URLS))
    alternative_urls: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_ALTERNATIVE_URLS.items()}
    )
    volatile_categories: list[str] = Field(
        default_factory=lambda: ["sme"],
        description="Categories probed with HEAD before the resolved URL is trusted",
    )

    model_config = SettingsConfigDict(env_prefix="RESOLVER_", extra="allow")

    @field_validator("fallback_urls")
    @classmethod
    def complete_fallback_urls(cls, v: dict[str, str]) -> dict[str, str]:
        """Overlay a partial fallback table on the built-in one."""
        unknown = set(v) - set(DEFAULT_FALLBACK_URLS)
        if unknown:
            raise ValueError(f"Unknown endpoint categories: {sorted(unknown)}")
        empty = [category for category, url in v.items() if not url.strip()]
        if empty:
            raise ValueError(f"Empty fallback URL for: {sorted(empty)}")
        return {**DEFAULT_FALLBACK_URLS, **v}

    @field_validator("alternative_urls", "volatile_categories")
    @classmethod
    def known_categories(cls, v):
        unknown = set(v) - set(DEFAULT_FALLBACK_URLS)
        if unknown:
            raise ValueError(f"Unknown endpoint categories: {sorted(unknown)}")
        return v


# ============================================================================
# Ingestion Configuration
# ============================================================================


class IngestionConfig(BaseSettings):
    """Download, retry and CSV cache configuration."""

    timeout_seconds: float = Field(default=30.0, ge=5, le=300, description="Download timeout")
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Download attempts per endpoint per cycle",
    )
    retry_base_delay_seconds: float = Field(default=2.0, ge=0)
    retry_jitter_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    max_concurrent_downloads: int = Field(default=3, ge=1, le=16)
    cache_dir: Path = Field(default=Path("./cache"), description="CSV blob cache directory")
    cache_max_age_seconds: int = Field(
        default=6 * 60 * 60,
        ge=0,
        description="Age under which a cache entry is served instead of downloading",
    )

    @field_validator("cache_dir", mode="before")
    @classmethod
    def expand_cache_dir(cls, v: Path | str) -> Path:
        """Expand user home in cache directory."""
        return Path(v).expanduser()

    model_config = SettingsConfigDict(env_prefix="INGESTION_", extra="allow")


# ============================================================================
# Storage Configuration
# ============================================================================


class StorageConfig(BaseSettings):
    """Record store collaborators."""

    parquet_path: Path | None = Field(
        default=Path("./data/stocks.parquet"),
        description="Parquet snapshot of the merged record set (unset disables it)",
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for the fast cache (unset uses an in-process cache)",
    )
    cache_ttl_seconds: int = Field(default=3600, ge=1)

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="allow")


class SearchConfig(BaseSettings):
    """Query facade limits."""

    default_limit: int = Field(default=20, ge=1)
    max_limit: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(env_prefix="SEARCH_", extra="allow")


# ============================================================================
# Observability Configuration
# ============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json, console)")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="allow")


class MetricsConfig(BaseSettings):
    """Prometheus metrics configuration."""

    enabled: bool = Field(default=True, description="Enable metrics collection")
    port: int = Field(default=9090, ge=1024, le=65535, description="Metrics server port")

    model_config = SettingsConfigDict(env_prefix="METRICS_", extra="allow")


# ============================================================================
# Unified Application Configuration
# ============================================================================


class AppConfig(BaseSettings):
    """Master configuration for the stock agent.

    All sub-configurations are included here for easy access:
        config.crawler.listing_page_url
        config.ingestion.max_retries
        config.storage.redis_url
        etc.
    """

    environment: Environment = Field(default=Environment.DEV)

    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    def is_dev(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEV

    def is_prod(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PROD


# Global configuration instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the global application configuration."""
    return config


def reload_config() -> AppConfig:
    """Reload configuration from environment.

    Returns:
        Freshly constructed AppConfig, also installed as the global instance
    """
    global config
    config = AppConfig()
    return config
