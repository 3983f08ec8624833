"""
Base classes for provider adapters.

A provider adapter knows one provider's endpoints and payload shapes:
- how to request the ticker listing and read its cursor
- how to fetch and normalize details, latest price and ratios for a symbol

Normalized payloads are plain dicts keyed by EnrichedStockRecord attribute
names, so the enricher never sees provider field names.

Concrete implementations:
- polygon_client.py: Polygon.io (next_url cursor listing)
- fmp_client.py: Financial Modeling Prep (single-page listing)
- yahoo_client.py: Yahoo Finance ratio fallback (yfinance)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from screener.data.http_client import ProviderHttpClient
from screener.types import DataSource, TickerReference


class CursorStyle(str, Enum):
    """How a listing endpoint exposes its next page."""

    NEXT_URL = "next_url"
    PAGE_NUMBER = "page_number"
    NONE = "none"


@dataclass
class ListingRequest:
    """First request of a ticker listing walk."""

    endpoint: str
    params: dict[str, Any] = field(default_factory=dict)
    cursor_style: CursorStyle = CursorStyle.NEXT_URL
    page_param: str = "page"
    first_page: int = 0
    page_size: int | None = None


@dataclass
class ListingPage:
    """One decoded listing page."""

    tickers: list[TickerReference]
    next_cursor: str | None = None
    raw_count: int = 0


def first_item(body: Any) -> dict[str, Any] | None:
    """Return the first object of a list payload, or a dict payload itself."""
    if isinstance(body, list):
        return body[0] if body and isinstance(body[0], dict) else None
    if isinstance(body, dict):
        return body
    return None


def as_float(value: Any) -> float | None:
    """Coerce a provider number to float; None for missing or garbage."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def pick(payload: dict[str, Any], *keys: str) -> Any:
    """First non-null value among keys."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


class RatioSource(ABC):
    """Anything that can supply normalized ratio fields for a symbol."""

    source: DataSource

    @abstractmethod
    async def get_ratios(self, symbol: str) -> dict[str, Any] | None:
        """Normalized ratio fields, or None when the source has nothing."""
        ...

    async def close(self) -> None:
        """Release any held resources."""
        return None


class ProviderAdapter(RatioSource):
    """Abstract base class for listing and enrichment providers."""

    source: DataSource
    default_security_types: frozenset[str] = frozenset()
    default_exchanges: frozenset[str] = frozenset({"XNYS", "XNAS"})

    def __init__(self, client: ProviderHttpClient) -> None:
        self.client = client

    @property
    def source_name(self) -> str:
        """Name of this data source."""
        return self.source.value

    @abstractmethod
    def listing_request(self) -> ListingRequest:
        """The first request of the ticker listing."""
        ...

    @abstractmethod
    def parse_listing(self, body: Any) -> ListingPage:
        """Decode one listing page into tickers and the next cursor."""
        ...

    @abstractmethod
    async def get_details(self, symbol: str) -> dict[str, Any] | None:
        """Normalized identity/classification fields.

        Raises:
            NotFoundError: If the provider does not know the symbol.
        """
        ...

    @abstractmethod
    async def get_price(self, symbol: str) -> dict[str, Any] | None:
        """Normalized price/volume fields."""
        ...

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.close()
