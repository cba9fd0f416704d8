"""Storage layer: raw CSV blob cache and record store adapters."""

from .adapters import InMemoryRecordCache, ParquetRecordStore, RedisRecordCache
from .cache import FileBlobCache
from .query import rank_records, record_matches, search_records

__all__ = [
    "FileBlobCache",
    "ParquetRecordStore",
    "RedisRecordCache",
    "InMemoryRecordCache",
    "rank_records",
    "record_matches",
    "search_records",
]
