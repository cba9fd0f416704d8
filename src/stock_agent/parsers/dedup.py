"""Symbol-level deduplication of the merged record set."""

from __future__ import annotations

from collections.abc import Iterable

from stock_agent.core.logging import get_logger
from stock_agent.models import StockRecord

logger = get_logger(__name__)

PRIMARY_SERIES = "EQ"


def completeness_score(record: StockRecord) -> int:
    """Weighted count of populated optional fields."""
    score = 0
    if record.isin:
        score += 2
    if record.listing_date:
        score += 2
    if record.face_value is not None:
        score += 1
    if record.market_lot is not None:
        score += 1
    if record.series:
        score += 1
    return score


def prefer(existing: StockRecord, candidate: StockRecord) -> StockRecord:
    """Pick the record to keep when two share a symbol.

    An EQ-series record always wins against a non-EQ one. Otherwise the
    candidate needs a strictly higher completeness score to replace the
    record already held.
    """
    existing_eq = existing.series == PRIMARY_SERIES
    candidate_eq = candidate.series == PRIMARY_SERIES
    if existing_eq != candidate_eq:
        return existing if existing_eq else candidate
    if completeness_score(candidate) > completeness_score(existing):
        return candidate
    return existing


def deduplicate_records(records: Iterable[StockRecord]) -> list[StockRecord]:
    """Merge records by uppercased symbol, keeping first-seen order."""
    merged: dict[str, StockRecord] = {}
    total = 0
    for record in records:
        total += 1
        key = record.symbol.upper()
        held = merged.get(key)
        merged[key] = record if held is None else prefer(held, record)

    if total != len(merged):
        logger.info("Deduplicated records", input=total, output=len(merged), collisions=total - len(merged))
    return list(merged.values())
