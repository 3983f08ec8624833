"""
Bulk import coordinator.

Runs one import end to end:
1. List tickers - paginate the provider listing and filter it
2. Skip - drop symbols whose stored record is already complete
3. Enrich - fetch details/price/ratios per symbol through a working set
   sized by the rate governor, upserting records in chunks as they arrive
4. Persist - final flush and the completed status document

Per-symbol and per-page failures are counted and the run carries on.
Authentication failures, an empty listing and a failed final flush end the
run with status "error"; an open rate-limit circuit ends it with status
"rate_limited". Records persisted before a failure are never removed.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable

import httpx

from screener.config import Settings
from screener.data.base import ProviderAdapter, RatioSource
from screener.data.filters import TickerFilter
from screener.data.fmp_client import FMP_BASE_URL, FMPClient
from screener.data.governor import GovernorConfig, RateGovernor
from screener.data.http_client import ProviderHttpClient, RetryPolicy
from screener.data.paginator import Paginator
from screener.data.polygon_client import POLYGON_BASE_URL, PolygonClient
from screener.data.yahoo_client import YahooRatioClient
from screener.enrichment.enricher import Enricher
from screener.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    DataFetchError,
    NoTickersFoundError,
    PersistenceError,
    PipelineError,
    RunAbortedError,
    ScreenerError,
)
from screener.logging import get_logger, get_phase, log_context
from screener.observability.errors import ErrorLedger
from screener.pool import AdaptiveWorkingSet
from screener.storage.base import RecordStore
from screener.storage.json_store import JsonFileStore
from screener.storage.sqlite_store import SqliteDocumentStore
from screener.storage.status import StatusReporter
from screener.types import (
    EnrichedStockRecord,
    Phase,
    RunStatusValue,
    RunSummary,
    TickerReference,
    generate_id,
    utc_now,
)

logger = get_logger(__name__)

_FATAL = (AuthenticationError, CircuitOpenError)


@dataclass
class PipelineConfig:
    """Configuration for an import or refresh run."""

    governor: GovernorConfig = field(default_factory=GovernorConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Enrichment
    batch_size: int = 100
    skip_existing: bool = True
    overwrite_nulls: bool = False

    # Limits
    max_run_seconds: float | None = None  # None = no deadline
    max_pages: int | None = None  # None = whole listing

    # Persistence
    flush_interval: float | None = 60.0

    # Rotation refresh
    rotation_groups: int = 6
    refresh_batch_size: int = 40

    @classmethod
    def for_profile(cls, name: str, **overrides: Any) -> PipelineConfig:
        """Build the config of a named profile.

        Args:
            name: One of "conservative", "adaptive", "turbo".
            **overrides: Fields replaced after the profile is applied.

        Raises:
            ConfigurationError: If the profile is unknown.
        """
        factory = PROFILES.get(name.strip().lower())
        if factory is None:
            raise ConfigurationError(
                f"Unknown import profile '{name}'",
                context={"profile": name, "available": sorted(PROFILES)},
            )
        return replace(factory(), **overrides)


PROFILES: dict[str, Callable[[], PipelineConfig]] = {
    "conservative": lambda: PipelineConfig(
        governor=GovernorConfig(
            initial_concurrency=2,
            max_concurrency=5,
            initial_backoff=1.0,
            min_backoff=0.5,
            max_backoff=10.0,
            success_threshold=30,
            request_spacing=0.25,
        ),
        retry=RetryPolicy(max_rate_limit_retries=15, max_retry_seconds=600.0),
        batch_size=50,
    ),
    "adaptive": PipelineConfig,
    "turbo": lambda: PipelineConfig(
        governor=GovernorConfig(
            initial_concurrency=15,
            max_concurrency=30,
            initial_backoff=0.1,
            min_backoff=0.1,
            max_backoff=3.0,
            success_threshold=10,
            request_spacing=0.0,
        ),
        retry=RetryPolicy(max_rate_limit_retries=8, max_retry_seconds=120.0),
        batch_size=250,
    ),
}


class ImportPipeline:
    """Coordinates listing, enrichment and persistence for one provider."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: RecordStore,
        status: StatusReporter,
        config: PipelineConfig | None = None,
        ratio_fallback: RatioSource | None = None,
        ticker_filter: TickerFilter | None = None,
        ledger: ErrorLedger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pipeline.

        Args:
            adapter: Provider adapter; its HTTP client carries the governor.
            store: Record store the run upserts into.
            status: Writer of the run status document.
            config: Pipeline configuration.
            ratio_fallback: Optional secondary ratio source.
            ticker_filter: Listing filter (provider defaults if None).
            ledger: Error ledger (a fresh one if None).
            clock: Monotonic clock used for the run deadline.
        """
        self.adapter = adapter
        self.store = store
        self.status = status
        self.config = config or PipelineConfig()
        self.ratio_fallback = ratio_fallback
        self.ledger = ledger or ErrorLedger()
        self.enricher = Enricher(adapter, ratio_fallback=ratio_fallback, ledger=self.ledger)
        self.paginator = Paginator(adapter, ticker_filter, max_pages=self.config.max_pages)
        self.last_summary: RunSummary | None = None
        self._clock = clock
        self._deadline: float | None = None
        self._stop_reason: str | None = None

    @property
    def governor(self) -> RateGovernor:
        return self.adapter.client.governor

    def request_stop(self, reason: str = "Stop requested") -> None:
        """Stop scheduling new symbols; in-flight work drains and is persisted."""
        if self._stop_reason is None:
            self._stop_reason = reason
            logger.info("Stop requested", reason=reason)

    @property
    def stop_reason(self) -> str | None:
        """Why the current run stopped admitting work, if it did."""
        return self._stop_reason

    def _should_stop(self) -> bool:
        if self._stop_reason is not None:
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._stop_reason = f"Run deadline of {self.config.max_run_seconds}s reached"
            logger.warning("Run deadline reached", max_run_seconds=self.config.max_run_seconds)
            return True
        return False

    def begin_run(self, summary: RunSummary) -> None:
        self.last_summary = summary
        self._stop_reason = None
        self._deadline = (
            self._clock() + self.config.max_run_seconds
            if self.config.max_run_seconds
            else None
        )

    def status_stats(self, summary: RunSummary) -> dict[str, Any]:
        """Stats block of the status document."""
        return {
            **summary.to_stats(),
            "rateLimiter": self.governor.stats(),
            "errors": self.ledger.stats(),
        }

    async def run(self) -> RunSummary:
        """Run a full bulk import.

        Returns:
            RunSummary with the run counters.

        Raises:
            NoTickersFoundError: If the listing yields no symbols.
            AuthenticationError: If the provider rejects the credentials.
            CircuitOpenError: If sustained rate limiting opened the circuit.
            RunAbortedError: If the deadline passed or a stop was requested.
            PersistenceError: If the final flush fails.
            PipelineError: On any other failure, wrapping the original error.
        """
        summary = RunSummary(run_id=generate_id("run"))
        self.begin_run(summary)

        with log_context(run_id=summary.run_id, phase=Phase.INIT.value):
            logger.info("Starting bulk import", source=self.adapter.source_name)
            await self.status.report(
                RunStatusValue.RUNNING, "Fetching ticker list", self.status_stats(summary)
            )
            try:
                await self.store.open()

                with log_context(phase=Phase.LIST_TICKERS.value):
                    try:
                        tickers = await self.paginator.fetch_all_pages()
                    finally:
                        summary.pages_fetched = self.paginator.pages_fetched
                        summary.pages_failed = self.paginator.pages_failed
                        summary.listing_truncated = self.paginator.truncated
                if not tickers:
                    raise NoTickersFoundError(
                        "No tickers found in provider listing",
                        context={"run_id": summary.run_id, "phase": Phase.LIST_TICKERS.value},
                    )

                summary.total_symbols = len(tickers)
                pending = await self._without_complete(tickers, summary)

                with log_context(phase=Phase.ENRICH.value):
                    await self.status.report(
                        RunStatusValue.RUNNING,
                        f"Enriching {len(pending)} of {len(tickers)} symbols",
                        self.status_stats(summary),
                    )
                    await self.enrich_and_persist(pending, summary)

                with log_context(phase=Phase.PERSIST.value):
                    await self.store.flush()

                if self._stop_reason is not None:
                    raise RunAbortedError(
                        f"Stopped early: {self._stop_reason}",
                        context={"run_id": summary.run_id, "processed": summary.processed},
                    )

            except ScreenerError as e:
                await self.fail_run(summary, e)
                raise
            except Exception as e:
                error = self.unexpected_failure(summary, e)
                await self.fail_run(summary, error)
                raise error from e

            summary.completed_at = utc_now()
            message = f"Import completed: {summary.succeeded} of {summary.total_symbols} symbols imported"
            if summary.listing_truncated:
                message += " (ticker listing truncated by a failed page)"
            await self.status.report(
                RunStatusValue.COMPLETED,
                message,
                self.status_stats(summary),
            )
            logger.info(
                "Bulk import completed",
                total=summary.total_symbols,
                succeeded=summary.succeeded,
                not_found=summary.not_found,
                failed=summary.failed,
                skipped=summary.skipped,
                duration_seconds=round(summary.duration_seconds, 1),
            )
            return summary

    async def _without_complete(
        self,
        tickers: list[TickerReference],
        summary: RunSummary,
    ) -> list[TickerReference]:
        if not self.config.skip_existing:
            return tickers
        complete = await self.store.complete_symbols()
        pending = [t for t in tickers if t.symbol not in complete]
        summary.skipped = len(tickers) - len(pending)
        if summary.skipped:
            logger.info("Skipping symbols already complete", skipped=summary.skipped)
        return pending

    async def _enrich_one(
        self,
        ticker: TickerReference,
    ) -> tuple[TickerReference, EnrichedStockRecord | None, DataFetchError | None]:
        try:
            return ticker, await self.enricher.enrich(ticker), None
        except _FATAL:
            raise
        except DataFetchError as e:
            return ticker, None, e
        except Exception as e:
            logger.debug("Unexpected enrichment error", symbol=ticker.symbol, exc_info=True)
            return ticker, None, DataFetchError(
                f"Unexpected error enriching {ticker.symbol}: {type(e).__name__}: {e}",
                context={"symbol": ticker.symbol, "error_type": type(e).__name__},
            )

    async def enrich_and_persist(
        self,
        tickers: list[TickerReference],
        summary: RunSummary,
        batch_size: int | None = None,
    ) -> None:
        """Enrich tickers through the adaptive working set, upserting in chunks.

        Stops admitting new symbols once a stop is requested or the deadline
        passes; symbols already in flight finish and are persisted.

        Raises:
            AuthenticationError: Credentials rejected; in-flight work is cancelled.
            CircuitOpenError: Fail-fast circuit tripped; in-flight work is cancelled.
        """
        batch_size = batch_size or self.config.batch_size
        queue = deque(tickers)
        pool = AdaptiveWorkingSet(self.governor)
        buffer: list[EnrichedStockRecord] = []

        try:
            while queue or len(pool):
                while queue and pool.has_room() and not self._should_stop():
                    ticker = queue.popleft()
                    pool.spawn(self._enrich_one(ticker), name=f"enrich-{ticker.symbol}")

                if not len(pool):
                    break

                fatal: BaseException | None = None
                for task in await pool.wait_any():
                    error = task.exception()
                    if error is not None:
                        fatal = fatal or error
                        continue
                    record = self._collect(task.result(), summary)
                    if record is not None:
                        buffer.append(record)
                if fatal is not None:
                    raise fatal

                if len(buffer) >= batch_size:
                    await self._persist(buffer, summary)
                    buffer = []
        except _FATAL:
            await pool.cancel_all()
            if buffer:
                await self.store.upsert(buffer)
            raise
        finally:
            await pool.cancel_all()

        if buffer:
            await self._persist(buffer, summary)

    def _collect(
        self,
        outcome: tuple[TickerReference, EnrichedStockRecord | None, DataFetchError | None],
        summary: RunSummary,
    ) -> EnrichedStockRecord | None:
        ticker, record, error = outcome
        summary.processed += 1
        if error is not None:
            summary.failed += 1
            self.ledger.record(error, context="enrich", symbol=ticker.symbol)
            logger.warning("Symbol enrichment failed", symbol=ticker.symbol, error=error.message)
            return None
        if record is None:
            summary.not_found += 1
            return None
        summary.succeeded += 1
        return record

    async def _persist(self, records: list[EnrichedStockRecord], summary: RunSummary) -> None:
        written = await self.store.upsert(records)
        logger.info(
            "Persisted chunk",
            records=written,
            processed=summary.processed,
            total=summary.total_symbols - summary.skipped,
            concurrency=self.governor.concurrency,
        )
        await self.status.report(
            RunStatusValue.RUNNING,
            f"Processed {summary.processed} of {summary.total_symbols - summary.skipped} symbols",
            self.status_stats(summary),
        )

    @staticmethod
    def unexpected_failure(summary: RunSummary, error: Exception) -> PipelineError:
        """Wrap an error outside the ScreenerError hierarchy so the run can fail cleanly."""
        return PipelineError(
            f"Unexpected {type(error).__name__}: {error}",
            context={"run_id": summary.run_id, "phase": get_phase()},
        )

    async def fail_run(
        self,
        summary: RunSummary,
        error: ScreenerError,
        label: str = "Import",
    ) -> None:
        """Flush what was accepted and record the failure in the status document."""
        summary.completed_at = utc_now()
        self.ledger.record(error, context="pipeline")

        if not isinstance(error, PersistenceError):
            try:
                await self.store.flush()
            except PersistenceError as flush_error:
                logger.error("Flush after failure also failed", error=str(flush_error))

        if isinstance(error, CircuitOpenError):
            status = RunStatusValue.RATE_LIMITED
            message = f"{label} paused: provider rate limit sustained"
        else:
            status = RunStatusValue.ERROR
            message = f"{label} failed: {error.message}"

        with log_context(phase=Phase.FAILED.value):
            logger.error(f"{label} failed", error=str(error), status=status.value)
        await self.status.report(status, message, self.status_stats(summary), error=str(error))

    async def close(self) -> None:
        """Close provider clients and the store."""
        await self.adapter.close()
        if self.ratio_fallback is not None:
            await self.ratio_fallback.close()
        await self.store.close()

    async def __aenter__(self) -> ImportPipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def build_store(settings: Settings, config: PipelineConfig) -> RecordStore:
    """Create the record store selected by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "sqlite":
        return SqliteDocumentStore(settings.database_path, overwrite_nulls=config.overwrite_nulls)
    return JsonFileStore(
        settings.snapshot_path,
        flush_interval=config.flush_interval,
        overwrite_nulls=config.overwrite_nulls,
    )


def build_adapter(
    settings: Settings,
    config: PipelineConfig,
    governor: RateGovernor | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    """Create the provider adapter selected by PROVIDER.

    Raises:
        ConfigurationError: If the provider's API key is missing.
    """
    governor = governor or RateGovernor(config.governor)
    api_key = settings.api_key_for(settings.PROVIDER)
    if settings.PROVIDER == "fmp":
        client = ProviderHttpClient(
            source="fmp",
            base_url=FMP_BASE_URL,
            governor=governor,
            api_key=api_key,
            api_key_param="apikey",
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            retry_policy=config.retry,
            transport=transport,
        )
        return FMPClient(client)

    client = ProviderHttpClient(
        source="polygon",
        base_url=POLYGON_BASE_URL,
        governor=governor,
        api_key=api_key,
        api_key_param="apiKey",
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        retry_policy=config.retry,
        transport=transport,
    )
    return PolygonClient(client)


def build_pipeline(
    settings: Settings,
    config: PipelineConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ImportPipeline:
    """Wire an ImportPipeline from settings.

    Args:
        settings: Application settings.
        config: Pipeline config (IMPORT_PROFILE with env overrides if None).
        transport: Optional httpx transport (used by tests).
    """
    if config is None:
        config = PipelineConfig.for_profile(
            settings.IMPORT_PROFILE,
            max_run_seconds=settings.MAX_RUN_SECONDS,
            max_pages=settings.MAX_PAGES,
            skip_existing=settings.SKIP_EXISTING,
        )
    settings.ensure_directories()
    return ImportPipeline(
        adapter=build_adapter(settings, config, transport=transport),
        store=build_store(settings, config),
        status=StatusReporter(settings.status_path),
        config=config,
        ratio_fallback=YahooRatioClient() if settings.YAHOO_FALLBACK else None,
    )
