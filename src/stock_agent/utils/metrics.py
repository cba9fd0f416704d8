"""Prometheus metrics for monitoring."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from stock_agent.core.interfaces import PipelineObserver

if TYPE_CHECKING:
    from stock_agent.models import FetchResult

# Ingestion metrics
downloads = Counter(
    "stock_agent_downloads_total",
    "Total number of endpoint download attempts",
    ["category", "status"],
)

download_duration = Histogram(
    "stock_agent_download_duration_seconds",
    "Time spent downloading one endpoint",
    ["category"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

download_retries = Counter(
    "stock_agent_download_retries_total",
    "Failed download attempts followed by another attempt",
    ["category"],
)

download_bytes = Counter(
    "stock_agent_download_bytes_total",
    "Bytes downloaded per endpoint",
    ["category"],
)

cache_hits = Counter(
    "stock_agent_cache_hits_total",
    "Fresh cache entries served instead of downloading",
    ["category"],
)

cache_fallbacks = Counter(
    "stock_agent_cache_fallbacks_total",
    "Stale cache entries served after exhausted retries",
    ["category"],
)

# Discovery metrics
classifications = Counter(
    "stock_agent_classifications_total",
    "Candidate CSV classifications",
    ["category", "decision"],
)

# Parsing metrics
records_normalized = Counter(
    "stock_agent_records_normalized_total",
    "Raw rows seen by the normalizer",
    ["category", "status"],
)

# Cycle metrics
fetch_duration = Histogram(
    "stock_agent_fetch_duration_seconds",
    "Time spent executing a complete fetch cycle",
    ["status"],
)

merged_records = Gauge(
    "stock_agent_merged_records",
    "Records in the merged set after the last successful cycle",
)

last_successful_fetch = Gauge(
    "stock_agent_last_successful_fetch_timestamp",
    "Timestamp of last successful fetch cycle",
)


class PrometheusObserver(PipelineObserver):
    """Pipeline observer that records events as Prometheus metrics."""

    def on_download_success(
        self, category: str, lines: int, elapsed_ms: float, size_bytes: int
    ) -> None:
        downloads.labels(category=category, status="success").inc()
        download_duration.labels(category=category).observe(elapsed_ms / 1000)
        download_bytes.labels(category=category).inc(size_bytes)

    def on_download_error(self, category: str, error: Exception, attempt: int, max_attempts: int) -> None:
        downloads.labels(category=category, status="failed").inc()
        if attempt < max_attempts:
            download_retries.labels(category=category).inc()

    def on_cache_hit(self, category: str) -> None:
        cache_hits.labels(category=category).inc()

    def on_cache_fallback(self, category: str) -> None:
        cache_fallbacks.labels(category=category).inc()

    def on_classification(self, category: str, should_use: bool) -> None:
        classifications.labels(category=category, decision="use" if should_use else "skip").inc()

    def on_cycle_completed(self, result: FetchResult) -> None:
        fetch_duration.labels(status="success").observe(result.duration_ms / 1000)
        merged_records.set(result.count)
        last_successful_fetch.set(time.time())

    def on_cycle_failed(self, result: FetchResult) -> None:
        fetch_duration.labels(status="failed").observe(result.duration_ms / 1000)


def start_metrics_server(port: int = 9090) -> None:
    """Start Prometheus metrics HTTP server.

    Args:
        port: Port to expose metrics on
    """
    start_http_server(port)
