"""CSV classifier.

Decides what a discovered CSV URL contains and whether it is worth ingesting.
Classification is rule based: an ordered table of URL patterns gives the
category and a static priority, a sampled byte range of the file confirms the
header shape, and an additive 0-10 quality score plus an ordered rule list
produce the final "use" recommendation.

URL evidence wins over header evidence whenever both exist. Equity, SME and
debt listings share almost identical headers, while the URL reliably encodes
where a file came from.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlsplit

import httpx

from stock_agent.core.config import ClassifierConfig, CrawlerConfig
from stock_agent.core.errors import ClassificationFailure, TransportError
from stock_agent.core.interfaces import LearningStore, PipelineObserver, notify_observers
from stock_agent.models import CSVCandidate, EndpointCategory
from stock_agent.scrapers.base import BaseScraper
from stock_agent.scrapers.nse.learning import InMemoryLearningState

PRIMARY_EQUITY_FILENAME = "EQUITY_L.CSV"
SME_EQUITY_FILENAME = "SME_EQUITY_L.CSV"
ARCHIVE_HOST = "nsearchives.nseindia.com"

DEBT_NAME = re.compile(r"debt|bond", re.IGNORECASE)


@dataclass(frozen=True)
class PatternRule:
    """One row of the classification table."""

    name: str
    url_patterns: tuple[re.Pattern[str], ...]
    header_patterns: tuple[str, ...]
    priority: int
    category: EndpointCategory
    description: str


def _rule(
    name: str,
    urls: Sequence[str],
    headers: Sequence[str],
    priority: int,
    category: EndpointCategory,
    description: str,
) -> PatternRule:
    return PatternRule(
        name=name,
        url_patterns=tuple(re.compile(p, re.IGNORECASE) for p in urls),
        header_patterns=tuple(headers),
        priority=priority,
        category=category,
        description=description,
    )


# Order matters for equal priorities: the first rule in the table wins.
KNOWN_PATTERNS: tuple[PatternRule, ...] = (
    _rule(
        "equity_main",
        [r"(?:^|/)EQUITY_L\.csv"],
        ["SYMBOL", "NAME OF COMPANY", "SERIES", "DATE OF LISTING"],
        10,
        EndpointCategory.EQUITY,
        "Main equity securities list",
    ),
    _rule(
        "sme_equity",
        [r"SME_EQUITY", r"sme.*equity"],
        ["SYMBOL", "NAME OF COMPANY", "SERIES"],
        9,
        EndpointCategory.SME,
        "SME equity securities",
    ),
    _rule(
        "new_listings",
        [r"new.*listing", r"recent.*listing", r"ipo"],
        ["SYMBOL", "COMPANY", "LISTING.*DATE"],
        8,
        EndpointCategory.NEW_LISTINGS,
        "Recently listed securities",
    ),
    _rule(
        "etf_list",
        [r"etf", r"exchange.*traded"],
        ["SYMBOL", "SecurityName", "Underlying"],
        7,
        EndpointCategory.ETF,
        "Exchange Traded Funds",
    ),
    _rule(
        "reits",
        [r"REITS?_L", r"reit"],
        ["SYMBOL", "NAME OF COMPANY"],
        6,
        EndpointCategory.REITS,
        "Real Estate Investment Trusts",
    ),
    _rule(
        "invits",
        [r"INVITS?_L", r"invit"],
        ["SYMBOL", "NAME OF COMPANY"],
        6,
        EndpointCategory.INVITS,
        "Infrastructure Investment Trusts",
    ),
    _rule(
        "idr_list",
        [r"IDR_W9\.csv", r"idr"],
        ["SYMBOL", "NAME OF COMPANY"],
        5,
        EndpointCategory.EQUITY,
        "International Depository Receipts",
    ),
    _rule(
        "pref_list",
        [r"PREF\.csv", r"pref"],
        ["SYMBOL", "NAME OF COMPANY"],
        5,
        EndpointCategory.EQUITY,
        "Preference shares",
    ),
    _rule(
        "warrant_list",
        [r"WARRANT\.csv", r"warrant"],
        ["SYMBOL", "NAME OF COMPANY"],
        5,
        EndpointCategory.EQUITY,
        "Warrants",
    ),
    _rule(
        "mf_close_end",
        [r"mf_close-end\.csv", r"close.*end"],
        ["SYMBOL", "NAME OF COMPANY"],
        5,
        EndpointCategory.EQUITY,
        "Close-ended mutual funds",
    ),
    _rule(
        "name_changes",
        [r"name.*change", r"company.*name"],
        ["OLD.*NAME", "NEW.*NAME", "SYMBOL"],
        4,
        EndpointCategory.NAME_CHANGES,
        "Company name changes",
    ),
    _rule(
        "symbol_changes",
        [r"symbol.*change"],
        ["OLD.*SYMBOL", "NEW.*SYMBOL"],
        4,
        EndpointCategory.SYMBOL_CHANGES,
        "Symbol changes",
    ),
    _rule(
        "debt_instruments",
        [r"DEBT\.csv", r"debt", r"bonds"],
        ["SYMBOL", "NAME OF COMPANY", "SERIES", "FACE VALUE"],
        3,
        EndpointCategory.DEBT,
        "Debt instruments and bonds",
    ),
    _rule(
        "delisted",
        [r"delist", r"suspend"],
        ["SYMBOL", "COMPANY", "DELIST"],
        2,
        EndpointCategory.DELISTED,
        "Delisted securities",
    ),
)


@dataclass(frozen=True)
class PatternMatch:
    category: EndpointCategory
    priority: int
    description: str
    confidence: float
    matched_pattern: str | None = None


UNKNOWN_MATCH = PatternMatch(EndpointCategory.UNKNOWN, 0, "Unknown CSV type", 0.0)


@dataclass
class ContentSample:
    """What a byte-range sample of a CSV revealed."""

    headers: tuple[str, ...] = ()
    sample_lines: tuple[str, ...] = ()
    estimated_rows: int = 0
    file_size: int | None = None
    last_modified: str | None = None
    header_match: PatternMatch | None = None
    error: str | None = None


@dataclass
class ClassificationReport:
    """Batch classification of every discovered URL."""

    classified: list[CSVCandidate] = field(default_factory=list)
    unclassified: list[CSVCandidate] = field(default_factory=list)
    high_priority: list[CSVCandidate] = field(default_factory=list)
    recommended: list[CSVCandidate] = field(default_factory=list)
    quality: dict[str, float] = field(default_factory=dict)


@dataclass
class Recommendations:
    """Classified candidates bucketed by how strongly they should be used."""

    must_use: list[CSVCandidate] = field(default_factory=list)
    should_use: list[CSVCandidate] = field(default_factory=list)
    maybe_use: list[CSVCandidate] = field(default_factory=list)
    skip: list[CSVCandidate] = field(default_factory=list)
    reasoning: dict[str, str] = field(default_factory=dict)

    def summary(self) -> dict[str, int]:
        return {
            "must_use": len(self.must_use),
            "should_use": len(self.should_use),
            "maybe_use": len(self.maybe_use),
            "skip": len(self.skip),
        }


def url_filename(url: str) -> str:
    """Last path segment of a URL, without query string."""
    return urlsplit(url).path.rsplit("/", 1)[-1]


def is_primary_equity_url(url: str) -> bool:
    return url_filename(url).upper() == PRIMARY_EQUITY_FILENAME


def is_sme_equity_url(url: str) -> bool:
    return url_filename(url).upper() == SME_EQUITY_FILENAME


def is_debt_like_url(url: str) -> bool:
    return DEBT_NAME.search(url) is not None


def classify_by_url(url: str, rules: Iterable[PatternRule] = KNOWN_PATTERNS) -> PatternMatch:
    """Highest priority rule whose URL pattern matches; ties go to table order."""
    best = UNKNOWN_MATCH
    for rule in rules:
        if rule.priority <= best.priority:
            continue
        if any(pattern.search(url) for pattern in rule.url_patterns):
            best = PatternMatch(rule.category, rule.priority, rule.description, 0.8, rule.name)
    return best


def header_coverage(headers: Sequence[str], expected: Sequence[str]) -> float:
    """Fraction of expected header patterns found among the actual headers."""
    if not expected:
        return 0.0
    normalized = [h.upper() for h in headers]
    matches = 0
    for pattern in expected:
        regex = re.compile(re.sub(r"\s+", ".*", pattern), re.IGNORECASE)
        if any(regex.search(header) for header in normalized):
            matches += 1
    return matches / len(expected)


def match_headers(
    headers: Sequence[str],
    rules: Iterable[PatternRule] = KNOWN_PATTERNS,
    threshold: float = 0.6,
) -> PatternMatch | None:
    best: PatternMatch | None = None
    for rule in rules:
        coverage = header_coverage(headers, rule.header_patterns)
        if coverage > threshold and rule.priority > (best.priority if best else 0):
            best = PatternMatch(rule.category, rule.priority, rule.description, coverage, rule.name)
    return best


def parse_sample(
    text: str,
    total_size: int | None = None,
    last_modified: str | None = None,
    rules: Iterable[PatternRule] = KNOWN_PATTERNS,
    threshold: float = 0.6,
) -> ContentSample:
    """Build a ContentSample from the first bytes of a CSV.

    Raises:
        ClassificationFailure: If the sample holds no non-blank line
    """
    lines = [line for line in text.lstrip("﻿").splitlines() if line.strip()]
    if not lines:
        raise ClassificationFailure("<sample>", "Empty CSV content")

    headers = tuple(
        h for h in (part.strip().strip("\"'").strip() for part in lines[0].split(",")) if h
    )

    sample_size = len(text.encode("utf-8"))
    size = total_size if total_size else sample_size
    average_line = sample_size / len(lines)
    estimated_rows = max(round(size / average_line) - 1, 0) if average_line else 0

    return ContentSample(
        headers=headers,
        sample_lines=tuple(lines[:5]),
        estimated_rows=estimated_rows,
        file_size=size,
        last_modified=last_modified,
        header_match=match_headers(headers, rules, threshold),
    )


def _total_size(response: httpx.Response) -> int | None:
    content_range = response.headers.get("content-range", "")
    if "/" in content_range:
        total = content_range.rsplit("/", 1)[-1].strip()
        if total.isdigit():
            return int(total)
    length = response.headers.get("content-length")
    return int(length) if length and length.isdigit() else None


def _days_since(last_modified: str, now: datetime) -> float | None:
    try:
        modified = parsedate_to_datetime(last_modified)
    except (TypeError, ValueError):
        return None
    if modified.tzinfo is None:
        modified = modified.replace(tzinfo=timezone.utc)
    return (now - modified).total_seconds() / 86400


def calculate_quality_score(
    url: str,
    sample: ContentSample,
    learning: LearningStore | None = None,
    archive_host: str = ARCHIVE_HOST,
    now: datetime | None = None,
) -> float:
    """Additive 0-10 heuristic of how well-formed, on-topic and current a CSV is."""
    score = 0.0

    if sample.headers:
        score += 3
        score += min(len(sample.headers) / 5, 2)

    if sample.estimated_rows > 1000:
        score += 2
    elif sample.estimated_rows > 100:
        score += 1
    elif sample.estimated_rows > 10:
        score += 0.5

    filename = url_filename(url).upper()
    debt_like = is_debt_like_url(url)
    if urlsplit(url).hostname == archive_host:
        score += 1
    if filename == PRIMARY_EQUITY_FILENAME:
        score += 3
    if "EQUITY" in filename and not debt_like:
        score += 2
    if "securities" in url.lower():
        score += 1
    if filename.endswith("_L.CSV"):
        score += 0.5
    if debt_like:
        score -= 2

    if sample.last_modified:
        days = _days_since(sample.last_modified, now or datetime.now(timezone.utc))
        if days is not None and days < 7:
            score += 1
        elif days is not None and days < 30:
            score += 0.5

    if learning is not None:
        if learning.is_high_quality(url):
            score += 1
        if learning.is_low_quality(url):
            score -= 1

    return max(0.0, min(10.0, score))


def should_use_csv(
    url: str,
    match: PatternMatch,
    quality: float,
    sample: ContentSample,
    learning: LearningStore | None = None,
) -> bool:
    """Ordered accept/reject rules; the first rule that applies decides."""
    if quality < 3:
        return False
    if len(sample.headers) < 2:
        return False
    if sample.estimated_rows < 10:
        return False
    if match.category == EndpointCategory.UNKNOWN:
        return False

    # Equity is never starved by the generic thresholds below
    if match.category == EndpointCategory.EQUITY and quality >= 5:
        return True
    if match.category == EndpointCategory.DEBT and match.priority < 5:
        return False

    if match.priority >= 8:
        return True
    if match.priority >= 6 and quality >= 6:
        return True
    if match.priority >= 4 and quality >= 8:
        return True

    if learning is not None:
        if learning.parsed_successfully(url):
            return True
        if learning.failed_to_parse(url):
            return False
    return False


class CSVClassifier(BaseScraper):
    """Classifies candidate CSV URLs and keeps the learning feedback loop."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: ClassifierConfig | None = None,
        learning: LearningStore | None = None,
        crawler_config: CrawlerConfig | None = None,
        observers: Sequence[PipelineObserver] = (),
        rules: Sequence[PatternRule] = KNOWN_PATTERNS,
    ) -> None:
        crawler_config = crawler_config or CrawlerConfig()
        super().__init__("csv_classifier", client, user_agent=crawler_config.user_agent)
        self.config = config or ClassifierConfig()
        self.learning: LearningStore = learning if learning is not None else InMemoryLearningState()
        self.archive_host = urlsplit(crawler_config.archive_base_url).hostname or ARCHIVE_HOST
        self.observers = list(observers)
        self.rules = tuple(rules)
        self.classifications: dict[str, CSVCandidate] = {}

    async def sample(self, url: str) -> ContentSample:
        """Fetch the first few KB of a CSV and parse its header shape.

        Raises:
            ClassificationFailure: If the URL cannot be sampled
        """
        headers = self.browser_headers(Range=f"bytes=0-{self.config.sample_bytes}")
        try:
            response = await self.fetch(
                url,
                timeout=self.config.sample_timeout_seconds,
                headers=headers,
                accept_status=(200, 206),
            )
        except TransportError as e:
            raise ClassificationFailure(url, e.message) from e

        try:
            return parse_sample(
                response.text,
                total_size=_total_size(response),
                last_modified=response.headers.get("last-modified"),
                rules=self.rules,
                threshold=self.config.header_match_threshold,
            )
        except ClassificationFailure as e:
            raise ClassificationFailure(url, "Empty CSV content") from e

    def classify_sample(self, url: str, sample: ContentSample, now: datetime | None = None) -> CSVCandidate:
        """Combine URL evidence with a content sample into a CSVCandidate."""
        match = classify_by_url(url, self.rules)
        # Header evidence is only consulted when the URL told us nothing
        if match.priority == 0 and sample.header_match is not None:
            match = sample.header_match

        quality = calculate_quality_score(url, sample, self.learning, self.archive_host, now)
        use = should_use_csv(url, match, quality, sample, self.learning)

        candidate = CSVCandidate(
            url=url,
            category=match.category,
            priority=match.priority,
            quality_score=quality,
            confidence=match.confidence,
            should_use=use,
            sampled_headers=sample.headers,
            estimated_row_count=sample.estimated_rows,
            description=match.description,
            matched_pattern=match.matched_pattern,
            file_size=sample.file_size,
            last_modified=sample.last_modified,
            error=sample.error,
        )
        self._learn_from(candidate, sample)
        return candidate

    async def classify(self, url: str) -> CSVCandidate:
        """Classify a single CSV URL. Never raises."""
        self.logger.debug("Classifying CSV", url=url)
        try:
            try:
                sample = await self.sample(url)
            except ClassificationFailure as e:
                self.logger.warning("Content sampling failed, using URL only", url=url, error=e.message)
                sample = ContentSample(error=e.message)
            candidate = self.classify_sample(url, sample)
        except Exception as e:
            self.logger.warning("Classification failed", url=url, error=str(e))
            candidate = CSVCandidate(
                url=url,
                category=EndpointCategory.UNKNOWN,
                priority=0,
                quality_score=0.0,
                confidence=0.0,
                should_use=False,
                description="Unable to classify",
                error=str(e),
            )

        notify_observers(self.observers, "on_classification", candidate.category.value, candidate.should_use)
        self.logger.info(
            "Classified CSV",
            url=url,
            category=candidate.category.value,
            priority=candidate.priority,
            quality=round(candidate.quality_score, 2),
            should_use=candidate.should_use,
        )
        return candidate

    async def analyze(self, urls: Iterable[str]) -> ClassificationReport:
        """Classify many URLs with bounded sampling concurrency."""
        ordered = sorted(set(urls))
        semaphore = asyncio.Semaphore(self.config.max_concurrent_samples)

        async def _bounded(url: str) -> CSVCandidate:
            async with semaphore:
                return await self.classify(url)

        candidates = await asyncio.gather(*(_bounded(url) for url in ordered))

        report = ClassificationReport()
        for candidate in candidates:
            report.quality[candidate.url] = candidate.quality_score
            if candidate.category == EndpointCategory.UNKNOWN:
                report.unclassified.append(candidate)
                continue
            report.classified.append(candidate)
            if candidate.priority >= 8:
                report.high_priority.append(candidate)
            if candidate.should_use:
                report.recommended.append(candidate)

        report.recommended.sort(key=lambda c: c.priority * c.quality_score, reverse=True)
        self.logger.info(
            "CSV analysis complete",
            total=len(ordered),
            classified=len(report.classified),
            recommended=len(report.recommended),
        )
        return report

    def recommend(self, report: ClassificationReport) -> Recommendations:
        """Bucket classified candidates into must/should/maybe/skip."""
        recommendations = Recommendations()
        for candidate in report.classified:
            if candidate.priority >= 9:
                recommendations.must_use.append(candidate)
                reason = f"Critical data source (priority {candidate.priority})"
            elif candidate.should_use and candidate.quality_score >= 7:
                recommendations.should_use.append(candidate)
                reason = f"High quality and useful (score: {candidate.quality_score:g})"
            elif candidate.should_use and candidate.quality_score >= 5:
                recommendations.maybe_use.append(candidate)
                reason = "Moderate quality but potentially useful"
            else:
                recommendations.skip.append(candidate)
                reason = (
                    f"Low priority or quality (priority: {candidate.priority}, "
                    f"quality: {candidate.quality_score:g})"
                )
            recommendations.reasoning[candidate.url] = reason
        return recommendations

    def report_parse_result(
        self, url: str, success: bool, record_count: int = 0, error: str | None = None
    ) -> None:
        """Feed an ingestion outcome back into the learning state."""
        if success:
            self.learning.record_parse_success(url)
            if record_count > self.config.high_quality_row_threshold:
                self.learning.mark_high_quality(url)
            self.logger.debug("Learning: parse succeeded", url=url, records=record_count)
        else:
            self.learning.record_parse_failure(url)
            self.learning.mark_low_quality(url)
            self.logger.debug("Learning: parse failed", url=url, error=error)

    def learning_stats(self) -> dict[str, int]:
        return {
            "total_classified": len(self.classifications),
            "known_patterns": len(self.rules),
            **self.learning.stats(),
        }

    def _learn_from(self, candidate: CSVCandidate, sample: ContentSample) -> None:
        self.classifications[candidate.url] = candidate
        if candidate.should_use and sample.estimated_rows > self.config.high_quality_row_threshold:
            self.learning.mark_high_quality(candidate.url)
        if sample.error or sample.estimated_rows < self.config.low_quality_row_threshold:
            self.learning.mark_low_quality(candidate.url)
