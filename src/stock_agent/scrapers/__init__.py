"""Network layer for exchange data sources.

## Submodules

- `base.py`: Shared HTTP client factory and browser-like request headers
- `nse/`: National Stock Exchange listing discovery and ingestion
"""

from .base import BaseScraper, create_http_client

__all__ = [
    "BaseScraper",
    "create_http_client",
]
