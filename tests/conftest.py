import sys
from pathlib import Path

# Ensure src/ is on sys.path for imports like `import stock_agent.*`
PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_PATH = PROJECT_ROOT / "src"
if SRC_PATH.exists():
    sys.path.insert(0, str(SRC_PATH))

import pytest  # noqa: E402
import structlog  # noqa: E402

from stock_agent.core.config import (  # noqa: E402
    AppConfig,
    ClassifierConfig,
    CrawlerConfig,
    IngestionConfig,
    MetricsConfig,
    ResolverConfig,
    StorageConfig,
)
from tests.fixtures.listings import ROUTES, FakeExchange, RecordingSleep  # noqa: E402


@pytest.fixture(autouse=True)
def captured_logs():
    """Capture structured log events instead of printing them to stdout."""
    with structlog.testing.capture_logs() as logs:
        yield logs


@pytest.fixture
def exchange():
    """Fake exchange serving the listing page and every listing CSV."""
    fake = FakeExchange()
    for url, body in ROUTES.items():
        fake.add(url, body)
    return fake


@pytest.fixture
async def http_client(exchange):
    client = exchange.client()
    yield client
    await client.aclose()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def app_config(tmp_path):
    """Isolated configuration writing only under tmp_path."""
    return AppConfig(
        crawler=CrawlerConfig(),
        classifier=ClassifierConfig(),
        resolver=ResolverConfig(),
        ingestion=IngestionConfig(
            cache_dir=tmp_path / "cache",
            max_retries=3,
            retry_base_delay_seconds=2.0,
            retry_jitter_seconds=1.0,
            retry_max_delay_seconds=30.0,
        ),
        storage=StorageConfig(parquet_path=tmp_path / "data" / "stocks.parquet", redis_url=None),
        metrics=MetricsConfig(enabled=False),
    )
