"""
Pytest configuration and fixtures for stock screener tests.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, AsyncGenerator, Generator
from unittest.mock import patch
from urllib.parse import urlencode

import httpx
import pytest

from screener.config import Settings, clear_settings_cache
from screener.data.governor import GovernorConfig, RateGovernor
from screener.data.http_client import ProviderHttpClient, RetryPolicy
from screener.data.polygon_client import POLYGON_BASE_URL, PolygonClient
from screener.storage.json_store import JsonFileStore
from screener.storage.status import StatusReporter

FULL_RATIOS = {
    "net_debt_to_ebitda": 1.5,
    "ev_to_ebit": 12.0,
    "return_on_tangible_capital_employed": 0.22,
    "fcf_to_net_income": 0.9,
    "share_count_growth": -0.01,
    "price_to_book": 3.2,
}


def listing_entry(
    symbol: str,
    exchange: str = "XNYS",
    security_type: str = "CS",
    name: str | None = None,
    active: bool = True,
) -> dict[str, Any]:
    """A Polygon /v3/reference/tickers result row."""
    return {
        "ticker": symbol,
        "name": name or f"{symbol} Corp",
        "market": "stocks",
        "primary_exchange": exchange,
        "type": security_type,
        "active": active,
    }


class FakePolygon:
    """Scriptable Polygon API served through httpx.MockTransport.

    The listing is paged by a ``cursor`` query parameter and chained with
    absolute ``next_url`` links, like the real API.
    """

    def __init__(self, listing: list[dict[str, Any]], page_size: int = 2) -> None:
        self.listing = listing
        self.page_size = page_size
        self.prices: dict[str, tuple[float, float]] = {}
        self.ratios: dict[str, dict[str, float] | None] = {}
        self.not_found: set[str] = set()
        self.status_overrides: dict[str, int] = {}
        self.bodies: dict[str, Any] = {}
        self.detail_rate_limits = 0
        self.delay = 0.0
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_request: Any = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_request is not None:
                self.on_request(request)
            if self.delay:
                await asyncio.sleep(self.delay)
            return self._route(request)
        finally:
            self.in_flight -= 1

    def _route(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path], json={"status": "ERROR"})
        if path in self.bodies:
            return httpx.Response(200, json=self.bodies[path])

        if path == "/v3/reference/tickers":
            return self._listing_page(int(request.url.params.get("cursor", "0")))

        symbol = path.rstrip("/").rsplit("/", 1)[-1]
        if path.startswith("/v2/aggs/ticker/"):
            symbol = path.split("/")[4]

        if path.startswith("/v3/reference/tickers/"):
            if self.detail_rate_limits > 0:
                self.detail_rate_limits -= 1
                return httpx.Response(429, json={"status": "ERROR"})
            if symbol in self.not_found:
                return httpx.Response(404, json={"status": "NOT_FOUND"})
            return httpx.Response(200, json={"results": {
                "ticker": symbol,
                "name": f"{symbol} Corp",
                "primary_exchange": "XNYS",
                "sic_description": "TECHNOLOGY - SOFTWARE",
                "market_cap": 1_000_000.0,
            }})

        if path.startswith("/v2/aggs/ticker/"):
            price, volume = self.prices.get(symbol, (10.0, 1000.0))
            return httpx.Response(200, json={"results": [{"c": price, "v": volume}]})

        if path.startswith("/v3/reference/financials/"):
            ratios = self.ratios.get(symbol, FULL_RATIOS)
            results = [{"ratios": ratios}] if ratios else []
            return httpx.Response(200, json={"results": results})

        return httpx.Response(404, json={"status": "NOT_FOUND"})

    def _listing_page(self, cursor: int) -> httpx.Response:
        start = cursor * self.page_size
        rows = self.listing[start:start + self.page_size]
        body: dict[str, Any] = {"results": rows, "status": "OK"}
        if start + self.page_size < len(self.listing):
            query = urlencode({"cursor": cursor + 1})
            body["next_url"] = f"{POLYGON_BASE_URL}/v3/reference/tickers?{query}"
        return httpx.Response(200, json=body)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def governor_config() -> GovernorConfig:
    """Governor tuned for fast tests: tiny backoffs and no request spacing."""
    return GovernorConfig(
        initial_backoff=0.001,
        min_backoff=0.001,
        max_backoff=0.01,
        request_spacing=0.0,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Retry policy with no pauses."""
    return RetryPolicy(
        max_rate_limit_retries=10,
        max_retry_seconds=5.0,
        network_retries=1,
        network_retry_pause=0.0,
        jitter_max=0.0,
    )


@pytest.fixture
def governor(governor_config: GovernorConfig) -> RateGovernor:
    return RateGovernor(governor_config)


@pytest.fixture
def fake_polygon() -> FakePolygon:
    """Six common stocks on allowed exchanges, three pages of two."""
    listing = [
        listing_entry("AAA"),
        listing_entry("BBB", exchange="XNAS"),
        listing_entry("CCC"),
        listing_entry("DDD", exchange="XNAS"),
        listing_entry("EEE"),
        listing_entry("FFF"),
    ]
    return FakePolygon(listing, page_size=2)


def make_polygon_client(
    fake: FakePolygon,
    governor: RateGovernor,
    retry_policy: RetryPolicy | None = None,
) -> PolygonClient:
    """PolygonClient whose HTTP traffic goes to a FakePolygon."""
    http = ProviderHttpClient(
        source="polygon",
        base_url=POLYGON_BASE_URL,
        governor=governor,
        api_key="test-polygon-key",
        retry_policy=retry_policy or RetryPolicy(network_retry_pause=0.0, jitter_max=0.0),
        transport=fake.transport(),
    )
    return PolygonClient(http)


@pytest.fixture
async def polygon(
    fake_polygon: FakePolygon,
    governor: RateGovernor,
    retry_policy: RetryPolicy,
) -> AsyncGenerator[PolygonClient, None]:
    client = make_polygon_client(fake_polygon, governor, retry_policy)
    yield client
    await client.close()


@pytest.fixture
async def json_store(temp_dir: Path) -> AsyncGenerator[JsonFileStore, None]:
    """An opened JSON store without the background flush task."""
    store = JsonFileStore(temp_dir / "data" / "all_stocks.json", flush_interval=None)
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def status_reporter(temp_dir: Path) -> StatusReporter:
    return StatusReporter(temp_dir / "data" / "import_status.json")


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "POLYGON_API_KEY": "pk-test-fake-polygon-key-123456",
        "FMP_API_KEY": "test-fmp-key",
        "PROVIDER": "polygon",
        "IMPORT_PROFILE": "adaptive",
        "STORAGE_BACKEND": "json",
        "DATA_DIR": str(temp_dir / "data"),
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Settings:
    """Provide a Settings instance with mock configuration."""
    settings = Settings(_env_file=None)
    settings.ensure_directories()
    return settings


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
