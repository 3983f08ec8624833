"""
Error ledger for import runs.

Categorizes recovered and fatal errors, keeps the most recent entries, and
counts them by category and context. The counts are folded into the run
status document so the serving layer can show why symbols went missing.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from screener.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    DataFetchError,
    NotFoundError,
    PersistenceError,
    RateLimitExhaustedError,
)
from screener.logging import get_logger
from screener.types import utc_now

logger = get_logger(__name__)

MAX_RECENT_ERRORS = 100


class ErrorCategory(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    NOT_FOUND = "NOT_FOUND"
    API = "API"
    FILE_SYSTEM = "FILE_SYSTEM"
    UNKNOWN = "UNKNOWN"


def categorize(error: BaseException) -> ErrorCategory:
    """Map an exception to its ledger category."""
    if isinstance(error, (RateLimitExhaustedError, CircuitOpenError)):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, AuthenticationError):
        return ErrorCategory.AUTH
    if isinstance(error, NotFoundError):
        return ErrorCategory.NOT_FOUND
    if isinstance(error, (PersistenceError, OSError)):
        return ErrorCategory.FILE_SYSTEM
    if isinstance(error, httpx.TransportError):
        return ErrorCategory.NETWORK
    if isinstance(error, DataFetchError):
        if error.status_code is not None:
            return ErrorCategory.API
        if isinstance(error.__cause__, httpx.TransportError):
            return ErrorCategory.NETWORK
        return ErrorCategory.API
    return ErrorCategory.UNKNOWN


@dataclass
class ErrorEntry:
    timestamp: datetime
    category: ErrorCategory
    context: str
    message: str
    symbol: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "context": self.context,
            "message": self.message,
            "symbol": self.symbol,
        }


@dataclass
class ErrorLedger:
    """In-memory record of errors seen during a run."""

    max_recent: int = MAX_RECENT_ERRORS
    total: int = 0
    by_category: Counter[str] = field(default_factory=Counter)
    by_context: Counter[str] = field(default_factory=Counter)
    recent: deque[ErrorEntry] = field(init=False)

    def __post_init__(self) -> None:
        self.recent = deque(maxlen=self.max_recent)

    def record(
        self,
        error: BaseException,
        context: str,
        symbol: str | None = None,
    ) -> ErrorEntry:
        entry = ErrorEntry(
            timestamp=utc_now(),
            category=categorize(error),
            context=context,
            message=str(error),
            symbol=symbol,
        )
        self.total += 1
        self.by_category[entry.category.value] += 1
        self.by_context[context] += 1
        self.recent.appendleft(entry)
        return entry

    @property
    def last_error(self) -> ErrorEntry | None:
        return self.recent[0] if self.recent else None

    def stats(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "byCategory": dict(self.by_category),
            "byContext": dict(self.by_context),
            "lastError": self.last_error.to_dict() if self.last_error else None,
        }
