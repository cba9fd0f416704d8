"""Tests for configuration, errors, logging, metrics and the health endpoint."""

import httpx
import pytest
from prometheus_client import REGISTRY

from stock_agent.core import config as config_module
from stock_agent.core.config import AppConfig, IngestionConfig, LoggingConfig
from stock_agent.core.errors import (
    ClassificationFailure,
    ConfigError,
    OptionalEndpointExhausted,
    RequiredEndpointExhausted,
    StockAgentError,
    StorageUnavailable,
    TransportError,
    ValidationError,
)
from stock_agent.core.health import HealthCheckServer
from stock_agent.core.interfaces import PipelineObserver, notify_observers
from stock_agent.core.logging import clear_trace_id, configure_logging, get_trace_id, set_trace_id
from stock_agent.models import FetchResult
from stock_agent.storage import FileBlobCache
from stock_agent.utils.metrics import PrometheusObserver


class TestConfig:
    """Test suite for the settings layer."""

    def test_defaults(self):
        config = AppConfig()

        assert config.ingestion.max_retries == 3
        assert config.ingestion.cache_max_age_seconds == 6 * 60 * 60
        assert config.resolver.discovery_ttl_seconds == 24 * 60 * 60
        assert config.classifier.sample_bytes == 2048
        assert config.search.default_limit == 20
        assert config.search.max_limit == 100
        assert set(config.resolver.fallback_urls) == {"equity", "sme", "etf", "reits", "invits"}
        assert config.is_dev()

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("INGESTION_MAX_RETRIES", "5")
        monkeypatch.setenv("INGESTION_CACHE_DIR", str(tmp_path / "csv"))

        ingestion = IngestionConfig()

        assert ingestion.max_retries == 5
        assert ingestion.cache_dir == tmp_path / "csv"

    def test_nested_override_through_app_config(self, monkeypatch):
        monkeypatch.setenv("STORAGE__REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("ENVIRONMENT", "prod")

        config = config_module.reload_config()

        assert config.storage.redis_url == "redis://cache:6379/1"
        assert config.is_prod()
        assert config_module.get_config() is config

        monkeypatch.delenv("STORAGE__REDIS_URL")
        monkeypatch.delenv("ENVIRONMENT")
        config_module.reload_config()

    def test_cache_dir_expands_home(self):
        assert "~" not in str(IngestionConfig(cache_dir="~/stock-cache").cache_dir)

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            IngestionConfig(max_retries=0)
        with pytest.raises(ValueError):
            LoggingConfig(level="LOUD")
        with pytest.raises(ValueError):
            LoggingConfig(format="xml")

    def test_log_level_is_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"


class TestErrors:
    """Test suite for the error hierarchy."""

    def test_transport_error(self):
        error = TransportError("https://x.test/a.csv", "unexpected HTTP status 503", status_code=503)

        assert error.retryable
        assert error.status_code == 503
        assert error.code == "TRANSPORT_ERROR"
        assert str(error).startswith("[TRANSPORT_ERROR] https://x.test/a.csv: unexpected HTTP status 503")

    def test_validation_error_details(self):
        error = ValidationError("too short", details={"lines": 1})

        assert error.retryable
        assert error.details == {"lines": 1}

    def test_exhausted_endpoints(self):
        required = RequiredEndpointExhausted("equity", 3, "HTTP 500")
        optional = OptionalEndpointExhausted("sme", 3, "HTTP 500")

        assert required.message == "equity: HTTP 500 (after 3 attempts)"
        assert required.code == "REQUIRED_ENDPOINT_EXHAUSTED"
        assert optional.code == "OPTIONAL_ENDPOINT_EXHAUSTED"
        assert not required.retryable

    @pytest.mark.parametrize(
        "error",
        [
            TransportError("u", "m"),
            ValidationError("m"),
            ClassificationFailure("u", "m"),
            RequiredEndpointExhausted("equity", 1, "m"),
            StorageUnavailable("redis", "m"),
            ConfigError("m"),
        ],
    )
    def test_all_errors_share_a_base(self, error):
        assert isinstance(error, StockAgentError)
        assert error.recovery_hint

    def test_unwritable_cache_dir_is_a_config_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(ConfigError):
            FileBlobCache(blocker / "cache")


class TestLogging:
    """Test suite for trace IDs."""

    def test_trace_id_lifecycle(self):
        trace_id = set_trace_id()

        assert get_trace_id() == trace_id
        assert set_trace_id("abc") == "abc"

        clear_trace_id()
        assert get_trace_id() is None

    def test_invalid_level_rejected(self):
        with pytest.raises(ValueError):
            configure_logging("LOUD")


class TestObservers:
    """Test suite for observer dispatch and the Prometheus observer."""

    def test_failing_observer_is_isolated(self):
        class Broken(PipelineObserver):
            def on_cache_hit(self, category):
                raise RuntimeError("observer bug")

        class Counting(PipelineObserver):
            hits = 0

            def on_cache_hit(self, category):
                Counting.hits += 1

        notify_observers([Broken(), Counting()], "on_cache_hit", "equity")

        assert Counting.hits == 1

    def test_prometheus_observer_counts_events(self):
        observer = PrometheusObserver()

        def sample(name, labels):
            return REGISTRY.get_sample_value(name, labels) or 0.0

        downloads_before = sample("stock_agent_downloads_total", {"category": "etf", "status": "success"})
        fallbacks_before = sample("stock_agent_cache_fallbacks_total", {"category": "etf"})
        decisions_before = sample("stock_agent_classifications_total", {"category": "etf", "decision": "skip"})

        observer.on_download_success("etf", 3, 120.0, 512)
        observer.on_cache_fallback("etf")
        observer.on_classification("etf", False)
        observer.on_cycle_completed(FetchResult(success=True, count=42, duration_ms=1500.0))

        assert sample("stock_agent_downloads_total", {"category": "etf", "status": "success"}) == downloads_before + 1
        assert sample("stock_agent_cache_fallbacks_total", {"category": "etf"}) == fallbacks_before + 1
        assert (
            sample("stock_agent_classifications_total", {"category": "etf", "decision": "skip"})
            == decisions_before + 1
        )
        assert REGISTRY.get_sample_value("stock_agent_merged_records") == 42

    def test_prometheus_observer_counts_retries(self):
        observer = PrometheusObserver()

        def retries():
            return REGISTRY.get_sample_value("stock_agent_download_retries_total", {"category": "reits"}) or 0.0

        def failures():
            return (
                REGISTRY.get_sample_value("stock_agent_downloads_total", {"category": "reits", "status": "failed"})
                or 0.0
            )

        retries_before = retries()
        failures_before = failures()
        error = TransportError("https://x.test/REITS_L.csv", "unexpected HTTP status 503", status_code=503)

        for attempt in (1, 2, 3):
            observer.on_download_error("reits", error, attempt, 3)

        assert retries() == retries_before + 2
        assert failures() == failures_before + 3


def get(url):
    return httpx.get(url, trust_env=False, timeout=5)


class TestHealthCheckServer:
    """Test suite for the HTTP health endpoint."""

    @pytest.fixture
    def serve(self):
        servers = []

        def start(report):
            server = HealthCheckServer(lambda: report, host="127.0.0.1", port=0)
            server.start()
            servers.append(server)
            return f"http://127.0.0.1:{server.port}"

        yield start
        for server in servers:
            server.stop()

    def test_health_and_ready(self, serve):
        base = serve({"status": "healthy", "records": 10})

        health = get(f"{base}/health")
        ready = get(f"{base}/ready")

        assert health.status_code == 200
        assert health.json()["records"] == 10
        assert ready.status_code == 200
        assert ready.json() == {"status": "ready"}

    def test_unhealthy_and_not_ready(self, serve):
        base = serve({"status": "unhealthy", "records": 0})

        assert get(f"{base}/health").status_code == 503
        assert get(f"{base}/ready").status_code == 503

    def test_degraded_is_still_up(self, serve):
        base = serve({"status": "degraded", "records": 3})

        assert get(f"{base}/health").status_code == 200

    def test_unknown_path(self, serve):
        base = serve({"status": "healthy"})

        assert get(f"{base}/metrics").status_code == 404
