"""
End-to-end tests for the bulk import pipeline against a scripted provider.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import orjson
import pytest

from screener.config import Settings
from screener.coordinator.pipeline import ImportPipeline, PipelineConfig, build_pipeline
from screener.data.governor import GovernorConfig, RateGovernor, SustainedRateLimitPolicy
from screener.data.http_client import RetryPolicy
from screener.data.polygon_client import PolygonClient
from screener.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    DataFetchError,
    NoTickersFoundError,
    PipelineError,
    RunAbortedError,
)
from screener.storage.base import RecordStore
from screener.storage.json_store import JsonFileStore
from screener.storage.sqlite_store import SqliteDocumentStore
from screener.storage.status import StatusReporter
from screener.types import EnrichedStockRecord, TickerReference

from tests.conftest import FakePolygon, make_polygon_client

SYMBOLS = ["AAA", "BBB", "CCC", "DDD", "EEE", "FFF"]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_pipeline(
    fake: FakePolygon,
    store: RecordStore,
    status: StatusReporter,
    governor_config: GovernorConfig,
    retry_policy: RetryPolicy,
    **kwargs: Any,
) -> ImportPipeline:
    clock = kwargs.pop("clock", None)
    config = PipelineConfig(
        governor=governor_config,
        retry=retry_policy,
        flush_interval=None,
        **kwargs,
    )
    adapter = make_polygon_client(fake, RateGovernor(governor_config), retry_policy)
    extra = {"clock": clock} if clock is not None else {}
    return ImportPipeline(adapter, store, status, config=config, **extra)


@pytest.fixture
def pipeline(
    fake_polygon: FakePolygon,
    json_store: JsonFileStore,
    status_reporter: StatusReporter,
    governor_config: GovernorConfig,
    retry_policy: RetryPolicy,
) -> ImportPipeline:
    return make_pipeline(fake_polygon, json_store, status_reporter, governor_config, retry_policy)


def read_status(reporter: StatusReporter) -> dict[str, Any]:
    return orjson.loads(reporter.path.read_bytes())


class TestImportScenarios:
    """Full runs against the fake provider."""

    @pytest.mark.asyncio
    async def test_clean_import(
        self,
        pipeline: ImportPipeline,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
    ) -> None:
        """Test that every listed symbol ends up stored and the run completes."""
        summary = await pipeline.run()

        assert summary.total_symbols == 6
        assert summary.succeeded == 6
        assert summary.pages_fetched == 3
        assert await json_store.symbols() == SYMBOLS

        stored = await json_store.get("BBB")
        assert stored is not None
        assert stored.price == 10.0
        assert stored.avg_dollar_volume == 10_000.0
        assert stored.is_complete

        doc = read_status(status_reporter)
        assert doc["status"] == "completed"
        assert doc["message"] == "Import completed: 6 of 6 symbols imported"
        assert doc["stats"]["totalSymbols"] == 6
        assert doc["stats"]["rateLimiter"]["rateLimitedRequests"] == 0

        snapshot = orjson.loads(json_store.path.read_bytes())
        assert [d["symbol"] for d in snapshot] == SYMBOLS

    @pytest.mark.asyncio
    async def test_rate_limited_burst_recovers(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        governor_config: GovernorConfig,
    ) -> None:
        """Test that a burst of 429s is retried and still yields every record."""
        fake_polygon.detail_rate_limits = 5

        summary = await pipeline.run()

        assert summary.succeeded == 6
        assert await json_store.count() == 6
        stats = read_status(status_reporter)["stats"]["rateLimiter"]
        assert stats["rateLimitedRequests"] >= 5
        assert pipeline.governor.backoff >= governor_config.initial_backoff
        assert pipeline.governor.concurrency <= governor_config.initial_concurrency

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_skipped(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
    ) -> None:
        """Test that a 404 on details drops the symbol without failing the run."""
        fake_polygon.not_found.add("CCC")

        summary = await pipeline.run()

        assert summary.not_found == 1
        assert summary.succeeded == 5
        assert await json_store.get("CCC") is None
        assert read_status(status_reporter)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_symbol_failure_is_counted(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
    ) -> None:
        for path in (
            "/v3/reference/tickers/DDD",
            "/v2/aggs/ticker/DDD/prev",
            "/v3/reference/financials/DDD",
        ):
            fake_polygon.status_overrides[path] = 500

        summary = await pipeline.run()

        assert summary.failed == 1
        assert summary.succeeded == 5
        assert pipeline.ledger.by_context["enrich"] == 1
        assert await json_store.get("DDD") is None

    @pytest.mark.asyncio
    async def test_malformed_payloads_do_not_abort_the_run(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
    ) -> None:
        fake_polygon.bodies["/v2/aggs/ticker/AAA/prev"] = {"results": [None]}
        fake_polygon.bodies["/v3/reference/financials/AAA"] = {"results": [None]}

        summary = await pipeline.run()

        assert summary.succeeded == 6
        stored = await json_store.get("AAA")
        assert stored is not None
        assert stored.price is None
        assert stored.rotce is None
        assert read_status(status_reporter)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_unexpected_symbol_error_is_counted(
        self,
        pipeline: ImportPipeline,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        enrich = pipeline.enricher.enrich

        async def flaky_enrich(ticker: TickerReference) -> EnrichedStockRecord | None:
            if ticker.symbol == "CCC":
                raise ValueError("unexpected payload shape")
            return await enrich(ticker)

        monkeypatch.setattr(pipeline.enricher, "enrich", flaky_enrich)

        summary = await pipeline.run()

        assert summary.failed == 1
        assert summary.succeeded == 5
        assert pipeline.ledger.by_context["enrich"] == 1
        assert await json_store.get("CCC") is None
        assert read_status(status_reporter)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_listing_page_is_reported_as_truncated(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        status_reporter: StatusReporter,
    ) -> None:
        def fail_second_page(request: httpx.Request) -> None:
            if request.url.params.get("cursor") == "1":
                fake_polygon.status_overrides["/v3/reference/tickers"] = 500

        fake_polygon.on_request = fail_second_page

        summary = await pipeline.run()

        assert summary.pages_failed == 1
        assert summary.listing_truncated
        assert summary.total_symbols == 2
        doc = read_status(status_reporter)
        assert doc["status"] == "completed"
        assert doc["stats"]["listingTruncated"] is True
        assert "truncated" in doc["message"]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(
        self,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        governor_config: GovernorConfig,
        retry_policy: RetryPolicy,
    ) -> None:
        """Test that importing the same data twice leaves the same store."""
        first = make_pipeline(
            fake_polygon, json_store, status_reporter, governor_config, retry_policy,
            skip_existing=False,
        )
        await first.run()
        before = {r.symbol: r.to_document() for r in await json_store.all_records()}

        second = make_pipeline(
            fake_polygon, json_store, status_reporter, governor_config, retry_policy,
            skip_existing=False,
        )
        await second.run()
        after = {r.symbol: r.to_document() for r in await json_store.all_records()}

        assert before.keys() == after.keys()
        for symbol in before:
            before[symbol].pop("lastUpdated")
            after[symbol].pop("lastUpdated")
        assert before == after

    @pytest.mark.asyncio
    async def test_complete_records_are_skipped(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
    ) -> None:
        await json_store.upsert([
            EnrichedStockRecord(
                symbol="AAA",
                price=99.0,
                net_debt_to_ebitda=1.0,
                ev_to_ebit=1.0,
                rotce=1.0,
                fcf_to_net_income=1.0,
                share_count_growth=0.0,
                price_to_book=1.0,
            ),
            EnrichedStockRecord(symbol="BBB", price=99.0),
        ])

        summary = await pipeline.run()

        assert summary.skipped == 1
        assert summary.succeeded == 5
        assert "/v3/reference/tickers/AAA" not in fake_polygon.calls
        assert "/v3/reference/tickers/BBB" in fake_polygon.calls
        aaa = await json_store.get("AAA")
        assert aaa is not None and aaa.price == 99.0

    @pytest.mark.asyncio
    async def test_working_set_respects_ceiling(
        self,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        retry_policy: RetryPolicy,
    ) -> None:
        """Test that one symbol at a time means at most three requests in flight."""
        fake_polygon.delay = 0.005
        single = GovernorConfig(
            initial_concurrency=1,
            max_concurrency=1,
            initial_backoff=0.001,
            min_backoff=0.001,
            max_backoff=0.01,
            request_spacing=0.0,
        )
        pipeline = make_pipeline(fake_polygon, json_store, status_reporter, single, retry_policy)

        await pipeline.run()

        assert fake_polygon.max_in_flight <= 3
        assert await json_store.count() == 6

    @pytest.mark.asyncio
    async def test_sqlite_backend(
        self,
        fake_polygon: FakePolygon,
        temp_dir: Path,
        status_reporter: StatusReporter,
        governor_config: GovernorConfig,
        retry_policy: RetryPolicy,
    ) -> None:
        store = SqliteDocumentStore(temp_dir / "stocks.db")
        pipeline = make_pipeline(fake_polygon, store, status_reporter, governor_config, retry_policy)

        async with pipeline:
            await pipeline.run()

        async with SqliteDocumentStore(temp_dir / "stocks.db") as reopened:
            assert await reopened.symbols() == SYMBOLS
            stats = await reopened.stats()
            assert stats["nyse"] == 6


class TestImportFailures:
    """Runs that end in error or rate_limited status."""

    @pytest.mark.asyncio
    async def test_auth_failure_is_fatal(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
    ) -> None:
        """Test that a 401 ends the run and keeps previously stored records."""
        await json_store.upsert([EnrichedStockRecord(symbol="OLD", price=1.0)])
        fake_polygon.status_overrides["/v2/aggs/ticker/AAA/prev"] = 401

        with pytest.raises(AuthenticationError):
            await pipeline.run()

        doc = read_status(status_reporter)
        assert doc["status"] == "error"
        assert doc["message"].startswith("Import failed: polygon rejected credentials")
        assert doc["lastError"]
        assert await json_store.get("OLD") is not None
        assert "OLD" in {d["symbol"] for d in orjson.loads(json_store.path.read_bytes())}

    @pytest.mark.asyncio
    async def test_empty_listing(
        self,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        governor_config: GovernorConfig,
        retry_policy: RetryPolicy,
    ) -> None:
        pipeline = make_pipeline(
            FakePolygon([]), json_store, status_reporter, governor_config, retry_policy
        )

        with pytest.raises(NoTickersFoundError):
            await pipeline.run()

        assert read_status(status_reporter)["status"] == "error"

    @pytest.mark.asyncio
    async def test_listing_failure(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        status_reporter: StatusReporter,
    ) -> None:
        fake_polygon.status_overrides["/v3/reference/tickers"] = 503

        with pytest.raises(DataFetchError) as exc_info:
            await pipeline.run()

        assert "503" in str(exc_info.value)
        assert read_status(status_reporter)["status"] == "error"

    @pytest.mark.asyncio
    async def test_sustained_rate_limit_opens_circuit(
        self,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        retry_policy: RetryPolicy,
    ) -> None:
        """Test that the fail-fast policy ends the run as rate_limited."""
        for symbol in SYMBOLS:
            fake_polygon.status_overrides[f"/v3/reference/tickers/{symbol}"] = 429
            fake_polygon.status_overrides[f"/v2/aggs/ticker/{symbol}/prev"] = 429
            fake_polygon.status_overrides[f"/v3/reference/financials/{symbol}"] = 429
        config = GovernorConfig(
            initial_backoff=0.001,
            min_backoff=0.001,
            max_backoff=0.01,
            request_spacing=0.0,
            sustained_policy=SustainedRateLimitPolicy.FAIL_FAST,
            circuit_threshold=3,
        )
        pipeline = make_pipeline(fake_polygon, json_store, status_reporter, config, retry_policy)

        with pytest.raises(CircuitOpenError):
            await pipeline.run()

        doc = read_status(status_reporter)
        assert doc["status"] == "rate_limited"
        assert doc["message"] == "Import paused: provider rate limit sustained"
        assert await json_store.count() == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_run(
        self,
        pipeline: ImportPipeline,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that an error outside the project hierarchy still ends in error status."""
        async def broken_complete_symbols() -> set[str]:
            raise RuntimeError("database is locked")

        monkeypatch.setattr(json_store, "complete_symbols", broken_complete_symbols)

        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        doc = read_status(status_reporter)
        assert doc["status"] == "error"
        assert doc["message"].startswith("Import failed: Unexpected RuntimeError")


class TestEarlyStop:
    """Graceful stop and run deadline."""

    @pytest.mark.asyncio
    async def test_request_stop_persists_in_flight_work(
        self,
        pipeline: ImportPipeline,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
    ) -> None:
        """Test that symbols already in flight are saved after a stop request."""

        def stop_on_first_detail(request: httpx.Request) -> None:
            if request.url.path.startswith("/v3/reference/tickers/"):
                pipeline.request_stop("operator stop")

        fake_polygon.on_request = stop_on_first_detail

        with pytest.raises(RunAbortedError, match="operator stop"):
            await pipeline.run()

        summary = pipeline.last_summary
        assert summary is not None
        assert 0 < summary.succeeded < 6
        assert await json_store.count() == summary.succeeded
        snapshot = orjson.loads(json_store.path.read_bytes())
        assert len(snapshot) == summary.succeeded
        assert read_status(status_reporter)["status"] == "error"

    @pytest.mark.asyncio
    async def test_deadline_stops_admission(
        self,
        fake_polygon: FakePolygon,
        json_store: JsonFileStore,
        status_reporter: StatusReporter,
        governor_config: GovernorConfig,
        retry_policy: RetryPolicy,
    ) -> None:
        clock = FakeClock()
        pipeline = make_pipeline(
            fake_polygon, json_store, status_reporter, governor_config, retry_policy,
            max_run_seconds=10.0,
            clock=clock,
        )
        await json_store.upsert([EnrichedStockRecord(symbol="OLD")])

        def advance(request: httpx.Request) -> None:
            clock.now = 60.0

        fake_polygon.on_request = advance

        with pytest.raises(RunAbortedError, match="deadline"):
            await pipeline.run()

        assert pipeline.last_summary is not None
        assert pipeline.last_summary.processed == 0
        assert await json_store.symbols() == ["OLD"]
        doc = read_status(status_reporter)
        assert doc["status"] == "error"
        assert "deadline" in doc["message"]


class TestBuildPipeline:
    """Tests for wiring a pipeline from settings."""

    @pytest.mark.asyncio
    async def test_build_from_settings(
        self,
        mock_settings: Settings,
        fake_polygon: FakePolygon,
        governor_config: GovernorConfig,
        retry_policy: RetryPolicy,
    ) -> None:
        settings = mock_settings.model_copy(update={"YAHOO_FALLBACK": False})
        config = PipelineConfig(governor=governor_config, retry=retry_policy, flush_interval=None)

        pipeline = build_pipeline(settings, config, transport=fake_polygon.transport())
        async with pipeline:
            summary = await pipeline.run()

        assert summary.succeeded == 6
        assert pipeline.ratio_fallback is None
        assert isinstance(pipeline.adapter, PolygonClient)
        assert settings.snapshot_path.exists()
        assert settings.status_path.exists()

    def test_missing_key_is_a_configuration_error(self, mock_settings: Settings) -> None:
        settings = mock_settings.model_copy(update={"POLYGON_API_KEY": None})

        with pytest.raises(ConfigurationError):
            build_pipeline(settings, PipelineConfig(flush_interval=None))

    def test_sqlite_backend_selected(self, mock_settings: Settings) -> None:
        settings = mock_settings.model_copy(
            update={"STORAGE_BACKEND": "sqlite", "YAHOO_FALLBACK": False}
        )

        pipeline = build_pipeline(settings, PipelineConfig(flush_interval=None))

        assert isinstance(pipeline.store, SqliteDocumentStore)
