"""Stock agent error hierarchy.

Provides domain-specific exceptions with recovery strategies. Only
``RequiredEndpointExhausted`` is fatal for a fetch cycle; everything else is
retried locally or degraded into a diagnostic on the result object.
"""

from __future__ import annotations

from typing import Optional


class StockAgentError(Exception):
    """Base exception for all stock agent errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for logging/monitoring
        retryable: Whether operation can be safely retried
        recovery_hint: Suggested recovery action
    """

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        retryable: bool = False,
        recovery_hint: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.retryable = retryable
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.recovery_hint:
            base += f" ({self.recovery_hint})"
        return base


class TransportError(StockAgentError):
    """Raised when an HTTP exchange fails.

    Examples:
        - Connect/read timeout
        - DNS resolution failure
        - Non-2xx response or empty body
    """

    def __init__(
        self,
        url: str,
        message: str,
        status_code: Optional[int] = None,
        recovery_hint: Optional[str] = None,
    ):
        super().__init__(
            f"{url}: {message}",
            code="TRANSPORT_ERROR",
            retryable=True,
            recovery_hint=recovery_hint or "Check archive host connectivity",
        )
        self.url = url
        self.status_code = status_code


class ValidationError(StockAgentError):
    """Raised when a CSV payload fails shape validation.

    Examples:
        - Fewer than two non-blank lines
        - Header row with fewer than three fields
        - Payload that cannot be parsed as CSV at all
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        recovery_hint: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            retryable=True,
            recovery_hint=recovery_hint or "Source may be serving an error page or a truncated file",
        )
        self.details = details or {}


class ClassificationFailure(StockAgentError):
    """Raised when a candidate URL cannot be sampled.

    Never fatal: the classifier degrades to URL-only classification.
    """

    def __init__(self, url: str, message: str):
        super().__init__(
            f"{url}: {message}",
            code="CLASSIFICATION_FAILURE",
            retryable=False,
            recovery_hint="Falling back to URL pattern classification",
        )
        self.url = url


class EndpointExhausted(StockAgentError):
    """Base for endpoints whose download attempts and cache are both exhausted."""

    def __init__(self, category: str, attempts: int, message: str, code: str):
        super().__init__(
            f"{category}: {message} (after {attempts} attempts)",
            code=code,
            retryable=False,
            recovery_hint="Retry the fetch cycle later",
        )
        self.category = category
        self.attempts = attempts


class RequiredEndpointExhausted(EndpointExhausted):
    """Raised when a required endpoint has no download and no cache entry."""

    def __init__(self, category: str, attempts: int, message: str):
        super().__init__(category, attempts, message, code="REQUIRED_ENDPOINT_EXHAUSTED")


class OptionalEndpointExhausted(EndpointExhausted):
    """Recorded when an optional endpoint has no download and no cache entry."""

    def __init__(self, category: str, attempts: int, message: str):
        super().__init__(category, attempts, message, code="OPTIONAL_ENDPOINT_EXHAUSTED")


class StorageUnavailable(StockAgentError):
    """Raised by record store adapters when the backend cannot be reached."""

    def __init__(self, backend: str, message: str):
        super().__init__(
            f"{backend}: {message}",
            code="STORAGE_UNAVAILABLE",
            retryable=True,
            recovery_hint=f"Check {backend} connectivity",
        )
        self.backend = backend


class ConfigError(StockAgentError):
    """Raised on configuration errors."""

    def __init__(self, message: str, recovery_hint: Optional[str] = None):
        super().__init__(
            message,
            code="CONFIG_ERROR",
            retryable=False,
            recovery_hint=recovery_hint or "Check environment variables and config files",
        )
