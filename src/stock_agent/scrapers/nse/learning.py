"""Session-scoped learning state for the CSV classifier.

The classifier only sees this through the ``LearningStore`` protocol, so a
persistent implementation can replace the in-memory one without touching the
scoring code. Losing it on restart is acceptable: it only nudges quality
scores and breaks ties.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class InMemoryLearningState:
    """Sets of URLs remembered from earlier classifications and parses."""

    successful_parsing: set[str] = field(default_factory=set)
    failed_parsing: set[str] = field(default_factory=set)
    high_quality: set[str] = field(default_factory=set)
    low_quality: set[str] = field(default_factory=set)

    def mark_high_quality(self, url: str) -> None:
        self.high_quality.add(url)

    def mark_low_quality(self, url: str) -> None:
        self.low_quality.add(url)

    def record_parse_success(self, url: str) -> None:
        self.successful_parsing.add(url)

    def record_parse_failure(self, url: str) -> None:
        self.failed_parsing.add(url)

    def is_high_quality(self, url: str) -> bool:
        return url in self.high_quality

    def is_low_quality(self, url: str) -> bool:
        return url in self.low_quality

    def parsed_successfully(self, url: str) -> bool:
        return url in self.successful_parsing

    def failed_to_parse(self, url: str) -> bool:
        return url in self.failed_parsing

    def stats(self) -> dict[str, int]:
        return {
            "successful_parsing": len(self.successful_parsing),
            "failed_parsing": len(self.failed_parsing),
            "high_quality": len(self.high_quality),
            "low_quality": len(self.low_quality),
        }
