"""
Per-symbol enrichment.

For one ticker, fetches details, latest price and ratios concurrently through
the provider adapter and reduces them into an EnrichedStockRecord. Every
group is optional: a failed or empty endpoint leaves its fields null. The
only way to get no record is a 404 from the details endpoint.

Retries live in the HTTP client; this module never retries on its own.
"""

from __future__ import annotations

import asyncio
from typing import Any

from screener.data.base import ProviderAdapter, RatioSource
from screener.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    DataFetchError,
    NotFoundError,
)
from screener.logging import get_logger, log_context
from screener.observability.errors import ErrorLedger
from screener.types import EnrichedStockRecord, TickerReference, utc_now

logger = get_logger(__name__)

_FATAL = (AuthenticationError, CircuitOpenError)


class Enricher:
    """Builds one normalized record per symbol.

    Args:
        adapter: Primary provider for details, price and ratios.
        ratio_fallback: Optional source consulted when the primary has no ratios.
        ledger: Error ledger for recovered failures.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        ratio_fallback: RatioSource | None = None,
        ledger: ErrorLedger | None = None,
    ) -> None:
        self.adapter = adapter
        self.ratio_fallback = ratio_fallback
        self.ledger = ledger or ErrorLedger()

    async def enrich(self, ticker: TickerReference) -> EnrichedStockRecord | None:
        """Enrich one ticker.

        Returns:
            The combined record, or None if the provider does not know the symbol.

        Raises:
            AuthenticationError: Credentials rejected by the provider.
            CircuitOpenError: Fail-fast circuit tripped on sustained 429s.
            DataFetchError: When every endpoint failed for this symbol.
        """
        symbol = ticker.symbol
        with log_context(symbol=symbol):
            details, price, ratios = await asyncio.gather(
                self.adapter.get_details(symbol),
                self.adapter.get_price(symbol),
                self.adapter.get_ratios(symbol),
                return_exceptions=True,
            )

            for result in (details, price, ratios):
                if isinstance(result, _FATAL):
                    raise result
                if isinstance(result, BaseException) and not isinstance(result, DataFetchError):
                    raise result

            if isinstance(details, NotFoundError):
                logger.info("Symbol not found at provider, skipping")
                return None

            failures = [
                (group, result)
                for group, result in (("details", details), ("price", price), ("ratios", ratios))
                if isinstance(result, DataFetchError)
            ]
            for group, error in failures:
                self.ledger.record(error, context=f"enrich.{group}", symbol=symbol)
                logger.debug("Enrichment group unavailable", group=group, error=str(error))

            if len(failures) == 3:
                raise DataFetchError(
                    f"All endpoints failed for {symbol}",
                    context={"symbol": symbol, "source": self.adapter.source_name},
                )

            details_data = self._payload(details)
            price_data = self._payload(price)
            ratio_data = self._payload(ratios)
            ratio_source = self.adapter.source_name if ratio_data else None

            if ratio_data is None and self.ratio_fallback is not None:
                ratio_data = await self._fallback_ratios(symbol)
                if ratio_data:
                    ratio_source = self.ratio_fallback.source.value

            return self._combine(ticker, details_data, price_data, ratio_data, ratio_source)

    @staticmethod
    def _payload(result: Any) -> dict[str, Any] | None:
        if isinstance(result, BaseException) or not result:
            return None
        return result

    async def _fallback_ratios(self, symbol: str) -> dict[str, Any] | None:
        assert self.ratio_fallback is not None
        try:
            return await self.ratio_fallback.get_ratios(symbol)
        except DataFetchError as e:
            self.ledger.record(e, context="enrich.ratios_fallback", symbol=symbol)
            logger.debug("Ratio fallback unavailable", error=str(e))
            return None

    def _combine(
        self,
        ticker: TickerReference,
        details: dict[str, Any] | None,
        price: dict[str, Any] | None,
        ratios: dict[str, Any] | None,
        ratio_source: str | None,
    ) -> EnrichedStockRecord:
        values: dict[str, Any] = {}
        for group in (ratios, price, details):
            if group:
                values.update({k: v for k, v in group.items() if v is not None})

        values.setdefault("name", ticker.name)
        values.setdefault("exchange", ticker.exchange)

        last_price = values.get("price")
        volume = values.get("volume")
        if last_price is not None and volume is not None:
            values["avg_dollar_volume"] = last_price * volume

        sources: dict[str, str] = {}
        if details:
            sources["tickerDetails"] = self.adapter.source_name
        if price:
            sources["priceData"] = self.adapter.source_name
        if ratio_source:
            sources["financialRatios"] = ratio_source

        return EnrichedStockRecord(
            symbol=ticker.symbol,
            data_sources=sources,
            last_updated=utc_now(),
            **values,
        )
