"""
Polygon.io adapter.

Endpoints:
- /v3/reference/tickers               listing, paginated through next_url
- /v3/reference/tickers/{symbol}      details (name, exchange, SIC, market cap)
- /v2/aggs/ticker/{symbol}/prev       previous-close aggregate
- /v3/reference/financials/{symbol}   financial ratios (least reliable)
"""

from __future__ import annotations

from typing import Any

from screener.data.base import (
    CursorStyle,
    ListingPage,
    ListingRequest,
    ProviderAdapter,
    as_float,
    first_item,
    pick,
)
from screener.data.http_client import ProviderHttpClient
from screener.logging import get_logger
from screener.types import DataSource, TickerReference

logger = get_logger(__name__)

POLYGON_BASE_URL = "https://api.polygon.io"

# Polygon ratio keys -> record attributes
_RATIO_KEYS: dict[str, tuple[str, ...]] = {
    "net_debt_to_ebitda": ("net_debt_to_ebitda",),
    "ev_to_ebit": ("ev_to_ebit",),
    "rotce": ("return_on_tangible_capital_employed", "rotce"),
    "fcf_to_net_income": ("fcf_to_net_income",),
    "share_count_growth": ("share_count_growth",),
    "price_to_book": ("price_to_book",),
    "pe_ratio": ("price_to_earnings", "pe_ratio"),
    "dividend_yield": ("dividend_yield",),
    "revenue_growth": ("revenue_growth",),
}


def split_sic_description(description: str | None) -> tuple[str | None, str | None]:
    """Split "SECTOR - INDUSTRY" SIC text into its two halves."""
    if not description:
        return None, None
    sector, _, industry = description.partition(" - ")
    return sector.strip() or None, industry.strip() or None


class PolygonClient(ProviderAdapter):
    """Adapter for the Polygon.io REST API."""

    source = DataSource.POLYGON
    default_security_types = frozenset({"CS"})

    def __init__(self, client: ProviderHttpClient, page_limit: int = 1000) -> None:
        super().__init__(client)
        self.page_limit = page_limit

    def listing_request(self) -> ListingRequest:
        return ListingRequest(
            endpoint="/v3/reference/tickers",
            params={
                "market": "stocks",
                "active": "true",
                "type": "CS",
                "limit": self.page_limit,
            },
            cursor_style=CursorStyle.NEXT_URL,
        )

    def parse_listing(self, body: Any) -> ListingPage:
        if not isinstance(body, dict):
            return ListingPage(tickers=[])
        results = body.get("results") or []
        tickers = [
            TickerReference(
                symbol=raw["ticker"],
                name=raw.get("name"),
                exchange=raw.get("primary_exchange"),
                security_type=raw.get("type"),
                market=raw.get("market"),
                active=bool(raw.get("active", True)),
            )
            for raw in results
            if isinstance(raw, dict) and raw.get("ticker")
        ]
        return ListingPage(tickers=tickers, next_cursor=body.get("next_url"), raw_count=len(results))

    async def get_details(self, symbol: str) -> dict[str, Any] | None:
        body = await self.client.request(f"/v3/reference/tickers/{symbol}")
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, dict):
            return None

        sector, industry = split_sic_description(results.get("sic_description"))
        return {
            "name": results.get("name"),
            "exchange": results.get("primary_exchange"),
            "sector": sector,
            "industry": industry,
            "market_cap": as_float(results.get("market_cap")),
        }

    async def get_price(self, symbol: str) -> dict[str, Any] | None:
        body = await self.client.request(f"/v2/aggs/ticker/{symbol}/prev")
        results = body.get("results") if isinstance(body, dict) else None
        bar = first_item(results)
        if bar is None:
            return None
        return {"price": as_float(bar.get("c")), "volume": as_float(bar.get("v"))}

    async def get_ratios(self, symbol: str) -> dict[str, Any] | None:
        body = await self.client.request(
            f"/v3/reference/financials/{symbol}",
            params={"limit": 5, "type": "Q"},
        )
        results = body.get("results") if isinstance(body, dict) else None
        latest = first_item(results)
        ratios = latest.get("ratios") if latest is not None else None
        if not isinstance(ratios, dict) or not ratios:
            return None
        return {attr: as_float(pick(ratios, *keys)) for attr, keys in _RATIO_KEYS.items()}
