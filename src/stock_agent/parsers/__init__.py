"""Parsers turning raw listing CSV payloads into stock records."""

from .base_parser import Parser
from .dedup import completeness_score, deduplicate_records
from .listing_parser import ListingParser

__all__ = ["Parser", "ListingParser", "deduplicate_records", "completeness_score"]
