"""Record store adapters.

Abstracts the persistent record store and the fast cache in front of it:
- ParquetRecordStore: Polars Parquet snapshot of the merged record set
- RedisRecordCache: per-symbol and per-category keys with a TTL
- InMemoryRecordCache: same surface, in-process, for single-node runs and tests

Every backend failure surfaces as ``StorageUnavailable``.
"""

from __future__ import annotations

import json
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import polars as pl
import redis

from stock_agent.core import RecordCache, RecordStore, StorageUnavailable, get_logger
from stock_agent.models import StockRecord
from stock_agent.storage.query import search_records

logger = get_logger(__name__)

RECORD_SCHEMA = {
    "symbol": pl.Utf8,
    "name": pl.Utf8,
    "series": pl.Utf8,
    "listing_date": pl.Utf8,
    "isin": pl.Utf8,
    "face_value": pl.Float64,
    "paid_up_value": pl.Float64,
    "market_lot": pl.Int64,
    "underlying": pl.Utf8,
    "category": pl.Utf8,
    "source": pl.Utf8,
    "last_updated": pl.Utf8,
}


def records_to_frame(records: list[StockRecord]) -> pl.DataFrame:
    return pl.DataFrame([r.model_dump(mode="json") for r in records], schema=RECORD_SCHEMA)


def frame_to_records(df: pl.DataFrame) -> list[StockRecord]:
    return [StockRecord.model_validate(row) for row in df.iter_rows(named=True)]


class ParquetRecordStore(RecordStore):
    """Persistent store holding the last merged record set as one Parquet file."""

    def __init__(self, path: Path | str, compression: str = "snappy"):
        self.path = Path(path)
        self.meta_path = self.path.with_suffix(".meta.json")
        self.compression = compression

    def put(self, records: list[StockRecord], metadata: dict[str, Any]) -> None:
        """Replace the snapshot atomically."""
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            compression_type: Any = self.compression
            records_to_frame(records).write_parquet(tmp, compression=compression_type)
            os.replace(tmp, self.path)
            self.meta_path.write_text(
                json.dumps({**metadata, "records": len(records)}, indent=2, default=str),
                encoding="utf-8",
            )
        except (OSError, pl.exceptions.PolarsError) as e:
            raise StorageUnavailable("parquet", f"Failed to write {self.path}: {e}") from e

        logger.info("Wrote record snapshot", path=str(self.path), records=len(records))

    def _load(self) -> pl.DataFrame | None:
        if not self.path.exists():
            return None
        try:
            return pl.read_parquet(self.path)
        except (OSError, pl.exceptions.PolarsError) as e:
            raise StorageUnavailable("parquet", f"Failed to read {self.path}: {e}") from e

    def get(self, symbol: str) -> StockRecord | None:
        df = self._load()
        if df is None:
            return None
        match = df.filter(pl.col("symbol").str.to_uppercase() == symbol.upper()).head(1)
        records = frame_to_records(match)
        return records[0] if records else None

    def search(
        self, query: str, limit: int, exact_match: bool = False, case_sensitive: bool = False
    ) -> list[StockRecord]:
        df = self._load()
        if df is None:
            return []
        return search_records(frame_to_records(df), query, limit, exact_match, case_sensitive)

    def metadata(self) -> dict[str, Any] | None:
        """Cycle metadata written alongside the last snapshot."""
        if not self.meta_path.exists():
            return None
        try:
            return json.loads(self.meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageUnavailable("parquet", f"Failed to read {self.meta_path}: {e}") from e


class InMemoryRecordCache(RecordCache):
    """Process-local fast cache with a TTL on the whole record set."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._by_symbol: dict[str, StockRecord] = {}
        self._by_category: dict[str, list[StockRecord]] = {}
        self._expires_at = 0.0

    def _expired(self) -> bool:
        return self.clock() >= self._expires_at

    def put(self, records: list[StockRecord], metadata: dict[str, Any]) -> None:
        by_symbol = {r.symbol.upper(): r for r in records}
        by_category: dict[str, list[StockRecord]] = {}
        for record in records:
            by_category.setdefault(record.category, []).append(record)
        with self._lock:
            self._by_symbol = by_symbol
            self._by_category = by_category
            self._expires_at = self.clock() + self.ttl_seconds

    def get(self, symbol: str) -> StockRecord | None:
        with self._lock:
            if self._expired():
                return None
            return self._by_symbol.get(symbol.upper())

    def get_category(self, category: str) -> list[StockRecord] | None:
        with self._lock:
            if self._expired():
                return None
            return self._by_category.get(category)

    def search(
        self, query: str, limit: int, exact_match: bool = False, case_sensitive: bool = False
    ) -> list[StockRecord]:
        with self._lock:
            if self._expired():
                return []
            records = list(self._by_symbol.values())
        return search_records(records, query, limit, exact_match, case_sensitive)

    def clear(self) -> None:
        with self._lock:
            self._by_symbol = {}
            self._by_category = {}
            self._expires_at = 0.0


class RedisRecordCache(RecordCache):
    """Redis-backed fast cache.

    Keys (all expiring after ``ttl_seconds``):
        {prefix}:symbol:{SYMBOL}   one record as JSON
        {prefix}:category:{name}   JSON list of the category's records
        {prefix}:all               JSON list of every record, used by search
    """

    def __init__(
        self,
        url: str | None = None,
        ttl_seconds: int = 3600,
        prefix: str = "stock_agent",
        client: redis.Redis | None = None,
    ):
        if client is None and url is None:
            raise ValueError("RedisRecordCache needs a url or a client")
        self.client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    def put(self, records: list[StockRecord], metadata: dict[str, Any]) -> None:
        by_category: dict[str, list[str]] = {}
        try:
            pipe = self.client.pipeline()
            for record in records:
                payload = record.model_dump_json()
                pipe.setex(self._key("symbol", record.symbol.upper()), self.ttl_seconds, payload)
                by_category.setdefault(record.category, []).append(payload)
            for category, payloads in by_category.items():
                pipe.setex(self._key("category", category), self.ttl_seconds, f"[{','.join(payloads)}]")
            pipe.setex(
                self._key("all"),
                self.ttl_seconds,
                f"[{','.join(p for ps in by_category.values() for p in ps)}]",
            )
            pipe.setex(self._key("meta"), self.ttl_seconds, json.dumps(metadata, default=str))
            pipe.execute()
        except redis.RedisError as e:
            raise StorageUnavailable("redis", str(e)) from e

    def _load_list(self, key: str) -> list[StockRecord] | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise StorageUnavailable("redis", str(e)) from e
        if raw is None:
            return None
        return [StockRecord.model_validate(item) for item in json.loads(raw)]

    def get(self, symbol: str) -> StockRecord | None:
        try:
            raw = self.client.get(self._key("symbol", symbol.upper()))
        except redis.RedisError as e:
            raise StorageUnavailable("redis", str(e)) from e
        return StockRecord.model_validate_json(raw) if raw is not None else None

    def get_category(self, category: str) -> list[StockRecord] | None:
        return self._load_list(self._key("category", category))

    def search(
        self, query: str, limit: int, exact_match: bool = False, case_sensitive: bool = False
    ) -> list[StockRecord]:
        records = self._load_list(self._key("all")) or []
        return search_records(records, query, limit, exact_match, case_sensitive)

    def clear(self) -> None:
        try:
            keys = list(self.client.scan_iter(match=self._key("*")))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            raise StorageUnavailable("redis", str(e)) from e
