"""
Core types for the screener import pipeline.

This module defines the data structures shared across the pipeline:
- Enums for run status, pipeline phases and data sources
- TickerReference: a provider listing entry (frozen)
- EnrichedStockRecord: the persisted per-symbol record
- RunStatus: the status document read by the serving layer
- Helpers for IDs, timestamps and exchange normalization
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "run").

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO8601 timestamp from a stored document."""
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


_EXCHANGE_ALIASES = {
    "NYSE": "XNYS",
    "XNYS": "XNYS",
    "NASDAQ": "XNAS",
    "XNAS": "XNAS",
}


def normalize_exchange(exchange: str | None) -> str | None:
    """Map common exchange spellings to their MIC code (NYSE -> XNYS)."""
    if not exchange:
        return exchange
    return _EXCHANGE_ALIASES.get(exchange.strip().upper(), exchange.strip())


class RunStatusValue(str, Enum):
    """Status values of the run-status document."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"


class Phase(str, Enum):
    """Phases of an import or refresh run."""

    INIT = "init"
    LIST_TICKERS = "list_tickers"
    ENRICH = "enrich"
    PERSIST = "persist"
    COMPLETE = "complete"
    FAILED = "failed"


class DataSource(str, Enum):
    """Providers that can fill a record's field groups."""

    POLYGON = "polygon"
    FMP = "fmp"
    YAHOO = "yahoo"
    CACHED = "cached"


@dataclass(frozen=True)
class TickerReference:
    """A provider's raw listing entry for one security."""

    symbol: str
    name: str | None = None
    exchange: str | None = None
    security_type: str | None = None
    market: str | None = None
    active: bool = True


# Ratio fields that must be present for a record to count as complete.
CORE_RATIO_FIELDS = (
    "net_debt_to_ebitda",
    "ev_to_ebit",
    "rotce",
    "fcf_to_net_income",
    "share_count_growth",
    "price_to_book",
)

# Python attribute -> document key used by the serving layer.
DOCUMENT_KEYS: dict[str, str] = {
    "symbol": "symbol",
    "name": "name",
    "exchange": "exchange",
    "sector": "sector",
    "industry": "industry",
    "price": "price",
    "volume": "volume",
    "avg_dollar_volume": "avgDollarVolume",
    "market_cap": "marketCap",
    "net_debt_to_ebitda": "netDebtToEBITDA",
    "ev_to_ebit": "evToEBIT",
    "rotce": "rotce",
    "fcf_to_net_income": "fcfToNetIncome",
    "share_count_growth": "shareCountGrowth",
    "price_to_book": "priceToBook",
    "pe_ratio": "peRatio",
    "dividend_yield": "dividendYield",
    "revenue_growth": "revenueGrowth",
    "score": "score",
    "data_sources": "dataSource",
    "last_updated": "lastUpdated",
}


@dataclass
class EnrichedStockRecord:
    """The persisted unit of state, keyed by symbol.

    Any write for an existing symbol is an upsert; see merged_into().
    """

    symbol: str
    name: str | None = None
    exchange: str | None = None

    # Classification
    sector: str | None = None
    industry: str | None = None

    # Pricing
    price: float | None = None
    volume: float | None = None
    avg_dollar_volume: float | None = None
    market_cap: float | None = None

    # Leverage / valuation / profitability
    net_debt_to_ebitda: float | None = None
    ev_to_ebit: float | None = None
    rotce: float | None = None
    fcf_to_net_income: float | None = None
    share_count_growth: float | None = None
    price_to_book: float | None = None
    pe_ratio: float | None = None
    dividend_yield: float | None = None
    revenue_growth: float | None = None

    # Computed by the serving side; carried through untouched
    score: float | None = None

    data_sources: dict[str, str] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.symbol = self.symbol.strip().upper()
        self.exchange = normalize_exchange(self.exchange)

    @property
    def is_complete(self) -> bool:
        """True when price and every core ratio are present."""
        if self.price is None:
            return False
        return all(getattr(self, name) is not None for name in CORE_RATIO_FIELDS)

    def merged_into(
        self,
        existing: EnrichedStockRecord | None,
        overwrite_nulls: bool = False,
    ) -> EnrichedStockRecord:
        """Return the record that results from upserting self over existing.

        Non-null fields of self replace stored values. Null fields keep the
        stored value unless overwrite_nulls is set.
        """
        if existing is None or overwrite_nulls:
            return self

        values: dict[str, Any] = {}
        for f in fields(self):
            incoming = getattr(self, f.name)
            if f.name == "data_sources":
                values[f.name] = {**existing.data_sources, **incoming}
            elif incoming is None:
                values[f.name] = getattr(existing, f.name)
            else:
                values[f.name] = incoming
        return EnrichedStockRecord(**values)

    def to_document(self) -> dict[str, Any]:
        """Serialize to the camelCase document shape of the serving layer."""
        doc: dict[str, Any] = {}
        for attr, key in DOCUMENT_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, datetime):
                value = value.isoformat()
            doc[key] = value
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> EnrichedStockRecord:
        """Build a record from a stored document. Unknown keys are ignored."""
        values: dict[str, Any] = {}
        for attr, key in DOCUMENT_KEYS.items():
            if key in doc:
                values[attr] = doc[key]
        if "last_updated" in values:
            values["last_updated"] = parse_timestamp(values["last_updated"]) or utc_now()
        if values.get("data_sources") is None:
            values.pop("data_sources", None)
        return cls(**values)


@dataclass
class RunStatus:
    """The small status document polled by the serving layer."""

    status: RunStatusValue = RunStatusValue.IDLE
    message: str = "Import not started"
    last_run: datetime | None = None
    last_error: str | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastError": self.last_error,
            "message": self.message,
            "stats": self.stats,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> RunStatus:
        return cls(
            status=RunStatusValue(doc.get("status", RunStatusValue.IDLE.value)),
            message=doc.get("message") or "",
            last_run=parse_timestamp(doc.get("lastRun")),
            last_error=doc.get("lastError"),
            stats=dict(doc.get("stats") or {}),
        )


@dataclass
class RunSummary:
    """Counters for one import or refresh run."""

    run_id: str
    total_symbols: int = 0
    processed: int = 0
    succeeded: int = 0
    not_found: int = 0
    failed: int = 0
    skipped: int = 0
    pages_fetched: int = 0
    pages_failed: int = 0
    listing_truncated: bool = False
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or utc_now()
        return (end - self.started_at).total_seconds()

    def to_stats(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "totalSymbols": self.total_symbols,
            "processedSymbols": self.processed,
            "successfulSymbols": self.succeeded,
            "notFoundSymbols": self.not_found,
            "failedSymbols": self.failed,
            "skippedSymbols": self.skipped,
            "pagesFetched": self.pages_fetched,
            "pagesFailed": self.pages_failed,
            "listingTruncated": self.listing_truncated,
            "durationSeconds": round(self.duration_seconds, 3),
        }
