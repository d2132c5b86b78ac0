"""Custom exceptions for the MCP deep research server."""

from typing import Any


class ResearchEngineError(Exception):
    """Base exception for deep research errors.

    Carries the engine stage the error surfaced in (when known) and a free-form
    context dict that ends up in the terminal ``error`` event.
    """

    def __init__(self, message: str, *, stage: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.context = context or {}

    @property
    def error_type(self) -> str:
        return "internal"


class ConfigurationError(ResearchEngineError):
    """Raised when a model or search provider cannot be built from its configuration."""

    @property
    def error_type(self) -> str:
        return "configuration"


class ResearchTimeoutError(ResearchEngineError, TimeoutError):
    """Raised when an operation or a whole session exceeds its time budget."""

    @property
    def error_type(self) -> str:
        return "timeout"


class UpstreamError(ResearchEngineError):
    """Raised when a model or search vendor call fails. The vendor message is kept verbatim."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status_code = status_code

    @property
    def error_type(self) -> str:
        return "upstream"


class CancellationError(ResearchEngineError):
    """Raised when in-flight work is aborted by the caller."""

    @property
    def error_type(self) -> str:
        return "cancellation"


class NonCacheableRequestError(ResearchEngineError, ValueError):
    """Raised when a cache key is requested for a request shape that must never be cached."""

    @property
    def error_type(self) -> str:
        return "non_cacheable"
