"""
Custom exception hierarchy for the stock screener import pipeline.

All exceptions inherit from ScreenerError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class ScreenerError(Exception):
    """Base exception for all screener errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(ScreenerError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing API key for the selected provider
        - Unknown import profile or storage backend
    """

    pass


class DataFetchError(ScreenerError):
    """Raised when fetching provider data fails.

    Context should include:
        - source: The provider (e.g., "polygon", "fmp")
        - endpoint: The endpoint or URL that was being fetched
        - status_code: HTTP status code if applicable
    """

    @property
    def status_code(self) -> int | None:
        """HTTP status code recorded in the context, if any."""
        value = self.context.get("status_code")
        return value if isinstance(value, int) else None


class NotFoundError(DataFetchError):
    """Raised when the provider answers 404 for a resource."""

    pass


class AuthenticationError(DataFetchError):
    """Raised on HTTP 401/403. Never retried; fatal for a run."""

    pass


class RateLimitExhaustedError(DataFetchError):
    """Raised when 429 retries exceed the attempt or elapsed-time budget.

    Context should include:
        - attempts: Number of rate-limited attempts made
        - elapsed_seconds: Time spent retrying
    """

    pass


class CircuitOpenError(DataFetchError):
    """Raised under the fail-fast policy after a sustained 429 streak.

    Context should include:
        - streak: Consecutive rate-limit responses observed
        - threshold: Configured circuit threshold
    """

    pass


class PersistenceError(ScreenerError):
    """Raised when the record store or status document cannot be written.

    Context should include:
        - backend: The store backend ("json", "sqlite")
        - path: The file or database path
    """

    pass


class PipelineError(ScreenerError):
    """Raised when an import run cannot complete.

    Context should include:
        - run_id: The run ID
        - phase: The phase the run was in
    """

    pass


class NoTickersFoundError(PipelineError):
    """Raised when the ticker listing yields no symbols at all."""

    pass


class RunAbortedError(PipelineError):
    """Raised when a run stops early (deadline reached or stop requested)."""

    pass
