"""File-backed CSV blob cache.

Each entry is two files in the cache directory:
- ``<key>.csv``: the raw payload
- ``<key>.meta.json``: timestamp, size, line count and SHA256 of the payload

Both are written to a temporary file first and moved into place, so a crash
mid-write never leaves a torn entry behind.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any

from stock_agent.core.errors import ConfigError
from stock_agent.core.interfaces import BlobCache
from stock_agent.core.logging import get_logger
from stock_agent.models import CacheEntry

logger = get_logger(__name__)


def payload_checksum(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _atomic_write(path: Path, data: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(data)
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileBlobCache(BlobCache):
    """Raw CSV payload cache in a local directory."""

    def __init__(self, cache_dir: Path | str, clock=time.time):
        self.cache_dir = Path(cache_dir)
        self.clock = clock
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cache directory {self.cache_dir} is not writable: {e}") from e

    def _payload_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.csv"

    def _meta_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.meta.json"

    def get(self, key: str) -> CacheEntry | None:
        """Load an entry regardless of age.

        Returns None when the entry is missing, its metadata is unreadable,
        or the payload no longer matches the stored checksum.
        """
        payload_path = self._payload_path(key)
        meta_path = self._meta_path(key)
        if not payload_path.exists() or not meta_path.exists():
            return None

        try:
            payload = payload_path.read_text(encoding="utf-8")
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Cache entry unreadable", key=key, error=str(e))
            return None

        checksum = payload_checksum(payload)
        if meta.get("checksum") != checksum:
            logger.warning("Cache entry checksum mismatch", key=key)
            return None

        return CacheEntry(
            raw_payload=payload,
            timestamp=float(meta["timestamp"]),
            size_bytes=int(meta.get("size_bytes", len(payload.encode("utf-8")))),
            line_count=int(meta.get("line_count", len(payload.splitlines()))),
            checksum=checksum,
        )

    def put(self, key: str, payload: str) -> CacheEntry:
        """Write an entry, replacing any previous one.

        Raises:
            OSError: If the entry cannot be written
        """
        entry = CacheEntry(
            raw_payload=payload,
            timestamp=self.clock(),
            size_bytes=len(payload.encode("utf-8")),
            line_count=len(payload.splitlines()),
            checksum=payload_checksum(payload),
        )
        meta = {
            "key": key,
            "timestamp": entry.timestamp,
            "size_bytes": entry.size_bytes,
            "line_count": entry.line_count,
            "checksum": entry.checksum,
        }
        _atomic_write(self._payload_path(key), payload)
        _atomic_write(self._meta_path(key), json.dumps(meta, indent=2))

        logger.info("Cache entry written", key=key, size_bytes=entry.size_bytes, lines=entry.line_count)
        return entry

    def delete(self, key: str) -> None:
        self._payload_path(key).unlink(missing_ok=True)
        self._meta_path(key).unlink(missing_ok=True)

    def clear(self) -> int:
        removed = 0
        for meta_path in self.cache_dir.glob("*.meta.json"):
            key = meta_path.name[: -len(".meta.json")]
            self.delete(key)
            removed += 1
        for orphan in self.cache_dir.glob("*.csv"):
            orphan.unlink(missing_ok=True)
        logger.info("Cache cleared", entries=removed)
        return removed

    def status(self, key: str, max_age_seconds: float) -> dict[str, Any]:
        """Describe one entry for the cache status report."""
        entry = self.get(key)
        if entry is None:
            return {"exists": False, "valid": False}
        now = self.clock()
        return {
            "exists": True,
            "valid": entry.is_valid(max_age_seconds, now),
            "age_minutes": round(entry.age_seconds(now) / 60, 1),
            "size_bytes": entry.size_bytes,
            "line_count": entry.line_count,
            "checksum": entry.checksum,
        }
