"""Polars-based normalizer for NSE securities listing files.

Turns the raw CSV of one endpoint category into canonical ``StockRecord``
objects:
- Category-specific column alias resolution (the same field appears under
  different spellings across EQUITY_L, SME, ETF, REIT and InvIT files)
- Forced series for the fund/trust lists that carry no SERIES column
- Row validation: symbol and name are mandatory, malformed rows are dropped
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from stock_agent.core.logging import get_logger
from stock_agent.models import EndpointCategory, StockRecord
from stock_agent.parsers.base_parser import Parser
from stock_agent.utils.metrics import records_normalized

logger = get_logger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9&\-.]+$", re.IGNORECASE)
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 200

DATE_FORMATS = ("%d-%b-%Y", "%d-%B-%Y", "%d-%m-%Y", "%d/%m/%Y", "%Y-%m-%d", "%d %b %Y")

# Logical field -> header spellings, compared with spaces/underscores removed
# and case folded. Earlier spellings win when a file carries several.
BASE_ALIASES: dict[str, tuple[str, ...]] = {
    "symbol": ("SYMBOL",),
    "name": ("NAME OF COMPANY", "COMPANY NAME", "NAME"),
    "series": ("SERIES",),
    "listing_date": ("DATE OF LISTING", "LISTING DATE"),
    "paid_up_value": ("PAID UP VALUE",),
    "market_lot": ("MARKET LOT",),
    "isin": ("ISIN NUMBER", "ISIN"),
    "face_value": ("FACE VALUE",),
}

CATEGORY_ALIASES: dict[EndpointCategory, dict[str, tuple[str, ...]]] = {
    EndpointCategory.EQUITY: BASE_ALIASES,
    EndpointCategory.SME: BASE_ALIASES,
    EndpointCategory.ETF: {
        **BASE_ALIASES,
        "name": ("SECURITY NAME", "NAME OF COMPANY", "NAME"),
        "underlying": ("UNDERLYING",),
    },
    EndpointCategory.REITS: {**BASE_ALIASES, "name": ("NAME OF COMPANY", "NAME OF REIT", "NAME")},
    EndpointCategory.INVITS: {**BASE_ALIASES, "name": ("NAME OF COMPANY", "NAME OF INVIT", "NAME")},
}

FORCED_SERIES: dict[EndpointCategory, str] = {
    EndpointCategory.ETF: "ETF",
    EndpointCategory.REITS: "RR",
    EndpointCategory.INVITS: "IV",
}


def source_label(category: EndpointCategory) -> str:
    return f"NSE_{category.value.upper()}_CSV"


def _header_key(header: str) -> str:
    return re.sub(r"[\s_]", "", header).upper()


def resolve_columns(columns: list[str], category: EndpointCategory) -> dict[str, str]:
    """Map logical field names to the actual column names present."""
    aliases = CATEGORY_ALIASES.get(category, BASE_ALIASES)
    by_key = {_header_key(col): col for col in columns}
    resolved: dict[str, str] = {}
    for field_name, spellings in aliases.items():
        for spelling in spellings:
            column = by_key.get(_header_key(spelling))
            if column is not None:
                resolved[field_name] = column
                break
    return resolved


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_listing_date(value: str | None) -> str | None:
    """ISO date when the value matches a known format, else None."""
    if value is None:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _to_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def _to_int(value: str | None) -> int | None:
    number = _to_float(value)
    return int(number) if number is not None else None


def is_valid_record(symbol: str | None, name: str | None) -> bool:
    if not symbol or not name:
        return False
    if not SYMBOL_PATTERN.match(symbol):
        return False
    return NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH


class ListingParser(Parser):
    """Normalizer for one category's listing CSV.

    Attributes:
        SCHEMA_VERSION: Parser schema version for tracking compatibility.
    """

    SCHEMA_VERSION = "v1.0"

    def __init__(self) -> None:
        """Initialize the parser."""
        self.logger = get_logger(__name__)

    def parse(
        self,
        payload: str,
        category: EndpointCategory | str = EndpointCategory.EQUITY,
        fetched_at: datetime | None = None,
    ) -> list[StockRecord]:
        """Parse a listing CSV into validated records.

        Args:
            payload: Raw CSV text
            category: Endpoint category the payload came from
            fetched_at: Timestamp stamped on every record (default: now)

        Returns:
            Records that passed validation; invalid rows are dropped silently

        Raises:
            ValidationError: If the payload cannot be read as CSV at all
        """
        category = EndpointCategory(category)
        fetched_at = fetched_at or datetime.now(timezone.utc)

        df = self.read_frame(payload)
        columns = resolve_columns(df.columns, category)
        if "symbol" not in columns or "name" not in columns:
            self.logger.warning(
                "Listing has no symbol or name column",
                category=category.value,
                columns=df.columns,
            )
            records_normalized.labels(category=category.value, status="dropped").inc(df.height)
            return []

        forced_series = FORCED_SERIES.get(category)
        source = source_label(category)

        records: list[StockRecord] = []
        for row in df.iter_rows(named=True):
            fields = {name: _clean(row.get(column)) for name, column in columns.items()}
            symbol = fields.get("symbol")
            name = fields.get("name")
            if not is_valid_record(symbol, name):
                continue

            records.append(
                StockRecord(
                    symbol=symbol.upper(),
                    name=name,
                    series=forced_series or fields.get("series"),
                    listing_date=parse_listing_date(fields.get("listing_date")),
                    isin=fields.get("isin"),
                    face_value=_to_float(fields.get("face_value")),
                    paid_up_value=_to_float(fields.get("paid_up_value")),
                    market_lot=_to_int(fields.get("market_lot")),
                    underlying=fields.get("underlying"),
                    category=category.value,
                    source=source,
                    last_updated=fetched_at,
                )
            )

        dropped = df.height - len(records)
        records_normalized.labels(category=category.value, status="valid").inc(len(records))
        if dropped:
            records_normalized.labels(category=category.value, status="dropped").inc(dropped)

        self.logger.info(
            "Normalized listing",
            category=category.value,
            rows=df.height,
            records=len(records),
            dropped=dropped,
        )
        return records
