"""
Rotating refresh of stored records.

Stored symbols are split into N rotation groups by position (index % N).
Each refresh re-enriches one group, by default the group of the current
New York hour, so the whole universe is revisited every N hours without
one run hitting the provider for every symbol. Refreshes can be limited to
regular market hours (09:30-16:00 America/New_York, weekdays).
"""

from __future__ import annotations

from datetime import datetime, time
from typing import Callable
from zoneinfo import ZoneInfo

from screener.coordinator.pipeline import ImportPipeline
from screener.exceptions import ConfigurationError, RunAbortedError, ScreenerError
from screener.logging import get_logger, log_context
from screener.types import (
    Phase,
    RunStatusValue,
    RunSummary,
    TickerReference,
    generate_id,
    utc_now,
)

logger = get_logger(__name__)

MARKET_TZ = ZoneInfo("America/New_York")
MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)


def is_market_hours(now: datetime) -> bool:
    """True on weekdays between the regular open and close in New York."""
    local = now.astimezone(MARKET_TZ)
    if local.weekday() >= 5:
        return False
    return MARKET_OPEN <= local.time() < MARKET_CLOSE


def current_rotation_group(now: datetime, groups: int) -> int:
    """Rotation group for the New York hour of now."""
    return now.astimezone(MARKET_TZ).hour % groups


def select_rotation_group(symbols: list[str], group: int, groups: int) -> list[str]:
    """Symbols at positions i where i % groups == group, in sorted order."""
    if groups < 1 or not 0 <= group < groups:
        raise ConfigurationError(
            f"Rotation group must be in [0, {groups})",
            context={"group": group, "groups": groups},
        )
    return [s for i, s in enumerate(sorted(symbols)) if i % groups == group]


class RotationRefresher:
    """Re-enriches one rotation group of stored symbols.

    Shares the pipeline's governor, enricher, store and status reporter.

    Args:
        pipeline: Import pipeline to borrow components from.
        market_hours_only: Skip the refresh outside regular market hours.
        now: Clock returning an aware datetime (injectable for tests).
    """

    def __init__(
        self,
        pipeline: ImportPipeline,
        market_hours_only: bool = False,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pipeline = pipeline
        self.market_hours_only = market_hours_only
        self._now = now

    @property
    def groups(self) -> int:
        return self.pipeline.config.rotation_groups

    async def run(self, group: int | None = None) -> RunSummary | None:
        """Refresh one rotation group.

        Args:
            group: Group to refresh; the current hour's group if None.

        Returns:
            RunSummary of the refresh, or None when skipped outside market hours.

        Raises:
            AuthenticationError: If the provider rejects the credentials.
            CircuitOpenError: If sustained rate limiting opened the circuit.
            RunAbortedError: If the deadline passed or a stop was requested.
            PipelineError: On any other failure, wrapping the original error.
        """
        now = self._now()
        if self.market_hours_only and not is_market_hours(now):
            logger.info("Outside market hours, refresh skipped")
            return None

        pipeline = self.pipeline
        group = current_rotation_group(now, self.groups) if group is None else group
        summary = RunSummary(run_id=generate_id("refresh"))
        pipeline.begin_run(summary)

        with log_context(run_id=summary.run_id, phase=Phase.ENRICH.value):
            try:
                await pipeline.store.open()
                records = {r.symbol: r for r in await pipeline.store.all_records()}
                symbols = select_rotation_group(list(records), group, self.groups)
                summary.total_symbols = len(symbols)
                logger.info(
                    "Starting rotation refresh",
                    group=group,
                    groups=self.groups,
                    symbols=len(symbols),
                )
                await pipeline.status.report(
                    RunStatusValue.RUNNING,
                    f"Refreshing rotation group {group + 1} of {self.groups}",
                    pipeline.status_stats(summary),
                )

                tickers = [
                    TickerReference(
                        symbol=symbol,
                        name=records[symbol].name,
                        exchange=records[symbol].exchange,
                    )
                    for symbol in symbols
                ]
                await pipeline.enrich_and_persist(
                    tickers,
                    summary,
                    batch_size=pipeline.config.refresh_batch_size,
                )

                with log_context(phase=Phase.PERSIST.value):
                    await pipeline.store.flush()

                if pipeline.stop_reason is not None:
                    raise RunAbortedError(
                        f"Stopped early: {pipeline.stop_reason}",
                        context={"run_id": summary.run_id, "processed": summary.processed},
                    )
            except ScreenerError as e:
                await pipeline.fail_run(summary, e, label="Refresh")
                raise
            except Exception as e:
                error = pipeline.unexpected_failure(summary, e)
                await pipeline.fail_run(summary, error, label="Refresh")
                raise error from e

            summary.completed_at = utc_now()
            await pipeline.status.report(
                RunStatusValue.COMPLETED,
                f"Refresh of group {group + 1} of {self.groups} completed: "
                f"{summary.succeeded} of {summary.total_symbols} symbols updated",
                pipeline.status_stats(summary),
            )
            logger.info(
                "Rotation refresh completed",
                group=group,
                succeeded=summary.succeeded,
                failed=summary.failed,
                not_found=summary.not_found,
            )
            return summary
