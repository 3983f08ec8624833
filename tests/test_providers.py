"""
Tests for provider adapters and payload normalization.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from screener.data.base import as_float, first_item, pick
from screener.data.fmp_client import FMP_BASE_URL, FMPClient
from screener.data.governor import RateGovernor
from screener.data.http_client import ProviderHttpClient, RetryPolicy
from screener.data.polygon_client import PolygonClient, split_sic_description
from screener.data.yahoo_client import YahooRatioClient, ratios_from_info
from screener.exceptions import AuthenticationError, DataFetchError

from tests.conftest import FakePolygon


def fmp_client(routes: dict[str, Any], governor: RateGovernor) -> tuple[FMPClient, list[httpx.Request]]:
    """FMPClient answering each path from routes (an int is a status code)."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path.removeprefix("/api/v3")
        answer = routes.get(path, 404)
        if isinstance(answer, int):
            return httpx.Response(answer, json={"Error Message": "nope"})
        return httpx.Response(200, json=answer)

    http = ProviderHttpClient(
        source="fmp",
        base_url=FMP_BASE_URL,
        governor=governor,
        api_key="fmp-key",
        api_key_param="apikey",
        retry_policy=RetryPolicy(network_retry_pause=0.0, jitter_max=0.0),
        transport=httpx.MockTransport(handler),
    )
    return FMPClient(http), seen


class TestPayloadHelpers:
    """Tests for shared normalization helpers."""

    def test_as_float(self) -> None:
        assert as_float("1.5") == 1.5
        assert as_float(3) == 3.0
        assert as_float(None) is None
        assert as_float("n/a") is None
        assert as_float(True) is None

    def test_first_item(self) -> None:
        assert first_item([{"a": 1}, {"a": 2}]) == {"a": 1}
        assert first_item({"a": 1}) == {"a": 1}
        assert first_item([]) is None
        assert first_item("oops") is None

    def test_pick_skips_nulls(self) -> None:
        assert pick({"a": None, "b": 0}, "a", "b") == 0
        assert pick({}, "a") is None

    def test_split_sic_description(self) -> None:
        assert split_sic_description("SERVICES - PREPACKAGED SOFTWARE") == (
            "SERVICES",
            "PREPACKAGED SOFTWARE",
        )
        assert split_sic_description("PHARMACEUTICALS") == ("PHARMACEUTICALS", None)
        assert split_sic_description(None) == (None, None)


class TestPolygonClient:
    """Tests for Polygon payload parsing."""

    def test_parse_listing_reads_next_url(self, governor: RateGovernor) -> None:
        client = PolygonClient(ProviderHttpClient("polygon", "https://api.polygon.io", governor))
        body = {
            "results": [
                {"ticker": "AAPL", "name": "Apple Inc.", "primary_exchange": "XNAS", "type": "CS"},
                {"name": "no ticker"},
            ],
            "next_url": "https://api.polygon.io/v3/reference/tickers?cursor=abc",
        }

        page = client.parse_listing(body)

        assert [t.symbol for t in page.tickers] == ["AAPL"]
        assert page.next_cursor == body["next_url"]
        assert page.raw_count == 2

    def test_listing_request_filters_common_stock(self, governor: RateGovernor) -> None:
        client = PolygonClient(ProviderHttpClient("polygon", "https://api.polygon.io", governor))

        request = client.listing_request()

        assert request.params["type"] == "CS"
        assert request.params["limit"] == 1000

    @pytest.mark.asyncio
    async def test_api_key_is_sent(self, polygon: PolygonClient, fake_polygon: FakePolygon) -> None:
        seen: list[httpx.Request] = []
        fake_polygon.on_request = seen.append

        await polygon.get_price("AAA")

        assert seen[0].url.params["apiKey"] == "test-polygon-key"


class TestFMPClient:
    """Tests for the FMP adapter."""

    def test_parse_listing(self, governor: RateGovernor) -> None:
        client, _ = fmp_client({}, governor)
        body = [
            {"symbol": "AAPL", "name": "Apple", "exchangeShortName": "NASDAQ", "type": "stock"},
            {"symbol": "SPY", "name": "SPDR", "exchangeShortName": "AMEX", "type": "etf"},
        ]

        page = client.parse_listing(body)

        assert [t.symbol for t in page.tickers] == ["AAPL", "SPY"]
        assert page.tickers[0].exchange == "NASDAQ"
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_details_and_price(self, governor: RateGovernor) -> None:
        client, seen = fmp_client(
            {
                "/profile/AAPL": [{
                    "companyName": "Apple Inc.",
                    "exchangeShortName": "NASDAQ",
                    "sector": "Technology",
                    "industry": "Consumer Electronics",
                    "mktCap": 3.0e12,
                }],
                "/quote/AAPL": [{"price": 190.5, "avgVolume": 5.0e7, "pe": 29.1}],
            },
            governor,
        )

        details = await client.get_details("AAPL")
        price = await client.get_price("AAPL")
        await client.close()

        assert details is not None
        assert details["name"] == "Apple Inc."
        assert details["sector"] == "Technology"
        assert price == {"price": 190.5, "volume": 5.0e7, "market_cap": None, "pe_ratio": 29.1}
        assert all(r.url.params["apikey"] == "fmp-key" for r in seen)

    @pytest.mark.asyncio
    async def test_ratios_merge_both_halves(self, governor: RateGovernor) -> None:
        client, _ = fmp_client(
            {
                "/ratios/AAPL": [{"priceToBookRatio": 45.0, "priceEarningsRatio": 29.0}],
                "/key-metrics/AAPL": [{"netDebtToEBITDA": 0.4, "roic": 0.55}],
            },
            governor,
        )

        ratios = await client.get_ratios("AAPL")
        await client.close()

        assert ratios is not None
        assert ratios["price_to_book"] == 45.0
        assert ratios["pe_ratio"] == 29.0
        assert ratios["net_debt_to_ebitda"] == 0.4
        assert ratios["rotce"] == 0.55
        assert ratios["ev_to_ebit"] is None

    @pytest.mark.asyncio
    async def test_ratios_survive_one_failing_half(self, governor: RateGovernor) -> None:
        client, _ = fmp_client(
            {"/ratios/AAPL": 500, "/key-metrics/AAPL": [{"pbRatio": 40.0}]},
            governor,
        )

        ratios = await client.get_ratios("AAPL")
        await client.close()

        assert ratios is not None
        assert ratios["price_to_book"] == 40.0

    @pytest.mark.asyncio
    async def test_ratios_none_when_both_empty(self, governor: RateGovernor) -> None:
        client, _ = fmp_client({"/ratios/AAPL": [], "/key-metrics/AAPL": 500}, governor)

        assert await client.get_ratios("AAPL") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_ratios_auth_failure_propagates(self, governor: RateGovernor) -> None:
        client, _ = fmp_client({"/ratios/AAPL": 401, "/key-metrics/AAPL": []}, governor)

        with pytest.raises(AuthenticationError):
            await client.get_ratios("AAPL")
        await client.close()


class TestYahooRatios:
    """Tests for the Yahoo Finance fallback."""

    def test_ratios_from_info(self) -> None:
        info = {
            "totalDebt": 100.0,
            "totalCash": 40.0,
            "ebitda": 30.0,
            "freeCashflow": 50.0,
            "netIncomeToCommon": 25.0,
            "returnOnEquity": 0.3,
            "priceToBook": 5.0,
            "trailingPE": 20.0,
        }

        ratios = ratios_from_info(info)

        assert ratios is not None
        assert ratios["net_debt_to_ebitda"] == pytest.approx(2.0)
        assert ratios["fcf_to_net_income"] == pytest.approx(2.0)
        assert ratios["price_to_book"] == 5.0
        assert ratios["ev_to_ebit"] is None

    def test_zero_denominators_give_null(self) -> None:
        ratios = ratios_from_info({"totalDebt": 1.0, "ebitda": 0, "priceToBook": 1.0})

        assert ratios is not None
        assert ratios["net_debt_to_ebitda"] is None

    def test_empty_info(self) -> None:
        assert ratios_from_info({}) is None
        assert ratios_from_info({"shortName": "Nothing useful"}) is None

    @pytest.mark.asyncio
    async def test_client_runs_yfinance_in_executor(self) -> None:
        ticker = MagicMock()
        ticker.info = {"priceToBook": 3.0}
        client = YahooRatioClient(max_workers=1)

        with patch("screener.data.yahoo_client.yf.Ticker", return_value=ticker) as mock_ticker:
            ratios = await client.get_ratios("AAPL")
        await client.close()

        mock_ticker.assert_called_once_with("AAPL")
        assert ratios is not None
        assert ratios["price_to_book"] == 3.0

    @pytest.mark.asyncio
    async def test_client_wraps_failures(self) -> None:
        client = YahooRatioClient(max_workers=1)

        with patch("screener.data.yahoo_client.yf.Ticker", side_effect=RuntimeError("blocked")):
            with pytest.raises(DataFetchError, match="Yahoo Finance lookup failed"):
                await client.get_ratios("AAPL")
        await client.close()
