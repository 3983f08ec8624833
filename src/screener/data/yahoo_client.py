"""
Yahoo Finance ratio fallback.

Used when the primary provider has no ratio payload for a symbol. yfinance
is not async-native, so calls run in a small thread pool.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import yfinance as yf

from screener.data.base import RatioSource, as_float
from screener.exceptions import DataFetchError
from screener.logging import get_logger
from screener.types import DataSource

logger = get_logger(__name__)


def ratios_from_info(info: dict[str, Any]) -> dict[str, Any] | None:
    """Derive record ratio fields from a yfinance ``info`` mapping."""
    if not info:
        return None

    total_debt = as_float(info.get("totalDebt"))
    total_cash = as_float(info.get("totalCash"))
    ebitda = as_float(info.get("ebitda"))
    net_debt_to_ebitda = None
    if total_debt is not None and ebitda:
        net_debt_to_ebitda = (total_debt - (total_cash or 0.0)) / ebitda

    free_cash_flow = as_float(info.get("freeCashflow"))
    net_income = as_float(info.get("netIncomeToCommon"))
    fcf_to_net_income = None
    if free_cash_flow is not None and net_income:
        fcf_to_net_income = free_cash_flow / net_income

    ratios = {
        "net_debt_to_ebitda": net_debt_to_ebitda,
        "ev_to_ebit": None,
        "rotce": as_float(info.get("returnOnEquity")),
        "fcf_to_net_income": fcf_to_net_income,
        "share_count_growth": None,
        "price_to_book": as_float(info.get("priceToBook")),
        "pe_ratio": as_float(info.get("trailingPE")),
        "dividend_yield": as_float(info.get("dividendYield")),
        "revenue_growth": as_float(info.get("revenueGrowth")),
    }
    if all(value is None for value in ratios.values()):
        return None
    return ratios


class YahooRatioClient(RatioSource):
    """Ratio source backed by yfinance."""

    source = DataSource.YAHOO

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def get_ratios(self, symbol: str) -> dict[str, Any] | None:
        loop = asyncio.get_running_loop()

        def _fetch() -> dict[str, Any]:
            return dict(yf.Ticker(symbol).info or {})

        try:
            info = await loop.run_in_executor(self._executor, _fetch)
        except Exception as e:
            raise DataFetchError(
                f"Yahoo Finance lookup failed for {symbol}",
                context={"source": self.source.value, "symbol": symbol, "error": str(e)},
            ) from e
        return ratios_from_info(info)

    async def close(self) -> None:
        self._executor.shutdown(wait=False)
