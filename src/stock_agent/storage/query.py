"""Record matching and relevance ordering shared by stores and the facade."""

from __future__ import annotations

from collections.abc import Iterable

from stock_agent.models import StockRecord


def record_matches(
    record: StockRecord, query: str, exact_match: bool = False, case_sensitive: bool = False
) -> bool:
    """Whether the symbol or name matches the query (substring unless exact)."""
    symbol, name = record.symbol, record.name
    if not case_sensitive:
        query, symbol, name = query.upper(), symbol.upper(), name.upper()
    if exact_match:
        return symbol == query or name == query
    return query in symbol or query in name


def rank_records(records: Iterable[StockRecord], query: str) -> list[StockRecord]:
    """Order by exact symbol, then symbol prefix, then EQ series, then symbol."""
    needle = query.upper()

    def key(record: StockRecord) -> tuple[bool, bool, bool, str]:
        symbol = record.symbol.upper()
        return (
            symbol != needle,
            not symbol.startswith(needle),
            record.series != "EQ",
            symbol,
        )

    return sorted(records, key=key)


def search_records(
    records: Iterable[StockRecord],
    query: str,
    limit: int,
    exact_match: bool = False,
    case_sensitive: bool = False,
) -> list[StockRecord]:
    matched = [r for r in records if record_matches(r, query, exact_match, case_sensitive)]
    return rank_records(matched, query)[:limit]
