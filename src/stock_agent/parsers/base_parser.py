"""Base parser class for all listing parsers.

This module provides an abstract base class that establishes a common interface
for the parsers turning raw CSV payloads into records. It also owns the shared
Polars read step so every parser sees the same column cleanup.
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from typing import Any

import polars as pl

from stock_agent.core.errors import ValidationError

NULL_VALUES = ["-", "", "null", "NULL", "N/A", "NA"]


class Parser(ABC):
    """Base class for all listing parsers.

    Attributes:
        SCHEMA_VERSION: Version identifier for the parser's output schema.
                       Used for tracking compatibility and schema evolution.
    """

    SCHEMA_VERSION: str = "v1.0"

    @abstractmethod
    def parse(self, payload: str, *args: Any, **kwargs: Any) -> list[Any]:
        """Parse a raw CSV payload.

        Args:
            payload: Full CSV text as downloaded
            *args: Additional positional arguments specific to the parser
            **kwargs: Additional keyword arguments specific to the parser

        Returns:
            Parsed records

        Raises:
            ValidationError: If the payload cannot be read as CSV at all
        """

    def read_frame(self, payload: str) -> pl.DataFrame:
        """Read a CSV payload as an all-string DataFrame with clean headers.

        Strips a leading byte-order mark and surrounding whitespace from
        column names; NSE files pad some headers with spaces.

        Raises:
            ValidationError: If Polars cannot read the payload
        """
        text = payload.lstrip("﻿")
        try:
            df = pl.read_csv(
                io.BytesIO(text.encode("utf-8")),
                infer_schema_length=0,
                null_values=NULL_VALUES,
                truncate_ragged_lines=True,
                ignore_errors=True,
            )
        except (pl.exceptions.PolarsError, OSError) as e:
            raise ValidationError(f"Unreadable CSV payload: {e}") from e

        renames = {col: col.strip().strip('"').strip() for col in df.columns}
        cleaned = list(renames.values())
        if len(set(cleaned)) != len(cleaned):
            # Keep the original names when stripping would collide
            return df
        return df.rename(renames)
