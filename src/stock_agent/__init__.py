"""Stock Agent - NSE listed securities discovery and ingestion service.

Keeps a canonical, deduplicated set of securities listed on the National
Stock Exchange of India, built from the listing CSV files it publishes.

## Architecture Layers

1. **Core** (`stock_agent.core`)
   - Configuration management
   - Logging and observability
   - Error handling
   - Abstract interfaces and health endpoint

2. **Discovery & Ingestion** (`stock_agent.scrapers`)
   - Listing page crawler
   - CSV classifier with quality scoring and learning feedback
   - URL resolver with fallback table and re-discovery
   - Ingestion engine with retry, backoff and stale-cache fallback

3. **Parsing** (`stock_agent.parsers`)
   - Category-aware listing normalizer
   - Symbol-level deduplication

4. **Storage** (`stock_agent.storage`)
   - CSV blob cache
   - Parquet record store, Redis or in-memory fast cache

5. **Service** (`stock_agent.service`)
   - Fetch, lookup, search, cache and health operations

6. **CLI** (`stock_agent.cli`)
   - Unified command-line interface

## Quick Start

```python
import asyncio

from stock_agent import StockDataService


async def main():
    async with StockDataService() as service:
        result = await service.fetch_all()
        print(result.count, result.breakdown)
        print(await service.get_by_symbol("INFY"))


asyncio.run(main())
```
"""

__version__ = "1.0.0"

from .core import (
    AppConfig,
    Environment,
    RequiredEndpointExhausted,
    StockAgentError,
    TransportError,
    ValidationError,
    configure_logging,
    get_config,
    get_logger,
    reload_config,
)
from .models import FetchResult, LookupResult, SearchResult, StockRecord
from .service import StockDataService

__all__ = [
    "__version__",
    "AppConfig",
    "Environment",
    "get_config",
    "reload_config",
    "configure_logging",
    "get_logger",
    "StockAgentError",
    "TransportError",
    "ValidationError",
    "RequiredEndpointExhausted",
    "StockRecord",
    "FetchResult",
    "LookupResult",
    "SearchResult",
    "StockDataService",
]
