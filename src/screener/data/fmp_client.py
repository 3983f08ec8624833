"""
FMP (Financial Modeling Prep) adapter.

Provides:
- /stock/list          full symbol listing (one unpaginated page)
- /profile/{symbol}    company profile (name, exchange, sector, industry)
- /quote/{symbol}      latest quote (price, average volume, P/E)
- /ratios/{symbol} and /key-metrics/{symbol}   ratio fields, merged
"""

from __future__ import annotations

import asyncio
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
from screener.exceptions import AuthenticationError, CircuitOpenError, DataFetchError
from screener.logging import get_logger
from screener.types import DataSource, TickerReference

logger = get_logger(__name__)

FMP_BASE_URL = "https://financialmodelingprep.com/api/v3"

# FMP field names (ratios and key-metrics merged) -> record attributes
_RATIO_KEYS: dict[str, tuple[str, ...]] = {
    "net_debt_to_ebitda": ("netDebtToEBITDA",),
    "ev_to_ebit": ("enterpriseValueOverEBIT", "evToEBIT"),
    "rotce": ("roic", "returnOnCapitalEmployed"),
    "fcf_to_net_income": ("freeCashFlowToNetIncome",),
    "share_count_growth": ("shareGrowth", "weightedAverageSharesGrowth"),
    "price_to_book": ("priceToBookRatio", "pbRatio"),
    "pe_ratio": ("priceEarningsRatio", "peRatio"),
    "dividend_yield": ("dividendYield",),
    "revenue_growth": ("revenueGrowth",),
}


class FMPClient(ProviderAdapter):
    """Adapter for the Financial Modeling Prep API."""

    source = DataSource.FMP
    default_security_types = frozenset({"stock"})

    def __init__(self, client: ProviderHttpClient) -> None:
        super().__init__(client)

    def listing_request(self) -> ListingRequest:
        return ListingRequest(endpoint="/stock/list", cursor_style=CursorStyle.NONE)

    def parse_listing(self, body: Any) -> ListingPage:
        if not isinstance(body, list):
            return ListingPage(tickers=[])
        tickers = [
            TickerReference(
                symbol=raw["symbol"],
                name=raw.get("name"),
                exchange=raw.get("exchangeShortName") or raw.get("exchange"),
                security_type=raw.get("type"),
                market="stocks",
            )
            for raw in body
            if isinstance(raw, dict) and raw.get("symbol")
        ]
        return ListingPage(tickers=tickers, raw_count=len(body))

    async def get_details(self, symbol: str) -> dict[str, Any] | None:
        profile = first_item(await self.client.request(f"/profile/{symbol}"))
        if profile is None:
            return None
        return {
            "name": profile.get("companyName"),
            "exchange": profile.get("exchangeShortName") or profile.get("exchange"),
            "sector": profile.get("sector") or None,
            "industry": profile.get("industry") or None,
            "market_cap": as_float(profile.get("mktCap")),
        }

    async def get_price(self, symbol: str) -> dict[str, Any] | None:
        quote = first_item(await self.client.request(f"/quote/{symbol}"))
        if quote is None:
            return None
        return {
            "price": as_float(quote.get("price")),
            "volume": as_float(pick(quote, "avgVolume", "volume")),
            "market_cap": as_float(quote.get("marketCap")),
            "pe_ratio": as_float(quote.get("pe")),
        }

    async def get_ratios(self, symbol: str) -> dict[str, Any] | None:
        """Merge the latest /ratios and /key-metrics rows.

        Either half may fail on its own; the ratios group is only missing
        when both do.
        """
        results = await asyncio.gather(
            self.client.request(f"/ratios/{symbol}", params={"limit": 1}),
            self.client.request(f"/key-metrics/{symbol}", params={"limit": 1}),
            return_exceptions=True,
        )

        merged: dict[str, Any] = {}
        for result in results:
            if isinstance(result, (AuthenticationError, CircuitOpenError)):
                raise result
            if isinstance(result, DataFetchError):
                logger.debug("FMP ratio half unavailable", symbol=symbol, error=str(result))
                continue
            if isinstance(result, BaseException):
                raise result
            row = first_item(result)
            if row:
                merged.update({k: v for k, v in row.items() if v is not None})

        if not merged:
            return None
        return {attr: as_float(pick(merged, *keys)) for attr, keys in _RATIO_KEYS.items()}
