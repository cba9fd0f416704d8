"""Core infrastructure and interfaces for the stock agent.

This module provides foundational components for all pipeline stages:
- Configuration management
- Logging and observability
- Error handling
- Abstract interfaces
"""

from .config import AppConfig, Environment, get_config, reload_config
from .errors import (
    ClassificationFailure,
    ConfigError,
    OptionalEndpointExhausted,
    RequiredEndpointExhausted,
    StockAgentError,
    StorageUnavailable,
    TransportError,
    ValidationError,
)
from .interfaces import (
    BlobCache,
    LearningStore,
    PipelineObserver,
    RecordCache,
    RecordStore,
    notify_observers,
)
from .logging import configure_logging, get_logger, get_trace_id, set_trace_id

__all__ = [
    # Config
    "AppConfig",
    "get_config",
    "reload_config",
    "Environment",
    # Errors
    "StockAgentError",
    "TransportError",
    "ValidationError",
    "ClassificationFailure",
    "RequiredEndpointExhausted",
    "OptionalEndpointExhausted",
    "StorageUnavailable",
    "ConfigError",
    # Interfaces
    "PipelineObserver",
    "RecordStore",
    "RecordCache",
    "BlobCache",
    "LearningStore",
    "notify_observers",
    # Logging
    "get_logger",
    "configure_logging",
    "get_trace_id",
    "set_trace_id",
]
