"""NSE securities listing pipeline: crawl, classify, resolve, ingest."""

from .classifier import ClassificationReport, CSVClassifier, Recommendations
from .ingestion import IngestionEngine
from .learning import InMemoryLearningState
from .page_crawler import CrawlOutcome, CrawlResult, PageCrawler
from .resolver import URLResolver, build_endpoints, resolve_endpoints

__all__ = [
    "PageCrawler",
    "CrawlResult",
    "CrawlOutcome",
    "CSVClassifier",
    "ClassificationReport",
    "Recommendations",
    "InMemoryLearningState",
    "URLResolver",
    "build_endpoints",
    "resolve_endpoints",
    "IngestionEngine",
]
