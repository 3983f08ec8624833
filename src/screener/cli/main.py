"""
CLI for the stock screener import pipeline.

Commands:
    screener import - Run a full bulk import
    screener refresh - Refresh one rotation group of stored stocks
    screener status - Show the last run status document
    screener show SYMBOL - Show one stored stock
    screener delete SYMBOL - Delete one stored stock
    screener stats - Show store totals
    screener config - Show current configuration
    screener version - Print version
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from screener import __version__
from screener.config import Settings, clear_settings_cache, get_settings
from screener.coordinator.pipeline import (
    ImportPipeline,
    PipelineConfig,
    build_pipeline,
    build_store,
)
from screener.coordinator.rotation import RotationRefresher
from screener.exceptions import ScreenerError
from screener.logging import setup_logging
from screener.storage.status import StatusReporter
from screener.types import RunStatusValue, RunSummary

app = typer.Typer(
    name="screener",
    help="Stock screener - rate-limited bulk import of NYSE/NASDAQ fundamentals",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

_STATUS_STYLES = {
    RunStatusValue.IDLE: "dim",
    RunStatusValue.RUNNING: "cyan",
    RunStatusValue.COMPLETED: "green",
    RunStatusValue.ERROR: "red",
    RunStatusValue.RATE_LIMITED: "yellow",
}


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        error_console.print(f"[red]Invalid configuration:[/red] {e}")
        return None


def _require_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'screener config' to see what's missing."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    return settings


def _pipeline_config(
    settings: Settings,
    profile: str | None,
    max_run_seconds: float | None,
    max_pages: int | None,
    skip_existing: bool | None,
) -> PipelineConfig:
    return PipelineConfig.for_profile(
        profile or settings.IMPORT_PROFILE,
        max_run_seconds=max_run_seconds if max_run_seconds is not None else settings.MAX_RUN_SECONDS,
        max_pages=max_pages if max_pages is not None else settings.MAX_PAGES,
        skip_existing=skip_existing if skip_existing is not None else settings.SKIP_EXISTING,
    )


async def _run_with_signals(pipeline: ImportPipeline, runner: Any) -> RunSummary | None:
    """Run a coroutine, turning SIGINT/SIGTERM into a graceful stop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop, f"Received {sig.name}")
    try:
        async with pipeline:
            return await runner
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)


def _print_summary(title: str, summary: RunSummary) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold]Run ID:[/bold] {summary.run_id}\n"
            f"[bold]Total symbols:[/bold] {summary.total_symbols}\n"
            f"[bold]Succeeded:[/bold] {summary.succeeded}\n"
            f"[bold]Not found:[/bold] {summary.not_found}\n"
            f"[bold]Failed:[/bold] {summary.failed}\n"
            f"[bold]Skipped:[/bold] {summary.skipped}\n\n"
            f"[dim]Pages: {summary.pages_fetched} fetched, {summary.pages_failed} failed"
            f"{' (listing truncated)' if summary.listing_truncated else ''} | "
            f"Duration: {summary.duration_seconds:.0f}s[/dim]",
            title=f"[bold green]{title}[/bold green]",
            border_style="green",
        )
    )


@app.command("import")
def import_(
    profile: Annotated[
        Optional[str],
        typer.Option("--profile", "-p", help="Governor profile (conservative|adaptive|turbo)"),
    ] = None,
    max_run_seconds: Annotated[
        Optional[float],
        typer.Option("--max-run-seconds", help="Stop admitting work after this many seconds"),
    ] = None,
    max_pages: Annotated[
        Optional[int],
        typer.Option("--max-pages", help="Safety cap on listing pages"),
    ] = None,
    skip_existing: Annotated[
        Optional[bool],
        typer.Option("--skip-existing/--no-skip-existing", help="Skip symbols already complete"),
    ] = None,
) -> None:
    """Run a full bulk import of the provider's ticker universe.

    Lists every NYSE/NASDAQ common stock, enriches each symbol with price and
    ratios, and upserts the records. Ctrl-C stops admitting new symbols and
    saves what is in flight.
    """
    settings = _require_settings()
    try:
        config = _pipeline_config(settings, profile, max_run_seconds, max_pages, skip_existing)
        pipeline = build_pipeline(settings, config)
    except ScreenerError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[bold]Provider:[/bold] {settings.PROVIDER}\n"
            f"[bold]Profile:[/bold] {profile or settings.IMPORT_PROFILE}\n"
            f"[bold]Storage:[/bold] {settings.STORAGE_BACKEND} ({settings.DATA_DIR})\n"
            f"[bold]Concurrency:[/bold] {config.governor.initial_concurrency} "
            f"(max {config.governor.max_concurrency})",
            title="[bold cyan]Bulk Import[/bold cyan]",
            border_style="cyan",
        )
    )

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Importing stocks...", total=None)
            summary = asyncio.run(_run_with_signals(pipeline, pipeline.run()))
            progress.update(task, description="[green]Import complete!")
    except ScreenerError as e:
        error_console.print(f"\n[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if summary is not None:
        _print_summary("Import Complete", summary)


@app.command()
def refresh(
    group: Annotated[
        Optional[int],
        typer.Option("--group", "-g", help="Rotation group (default: current hour's group)"),
    ] = None,
    market_hours_only: Annotated[
        bool,
        typer.Option("--market-hours-only", help="Skip outside 09:30-16:00 New York time"),
    ] = False,
    profile: Annotated[
        Optional[str],
        typer.Option("--profile", "-p", help="Governor profile (conservative|adaptive|turbo)"),
    ] = None,
) -> None:
    """Re-enrich one rotation group of stored stocks."""
    settings = _require_settings()
    try:
        config = _pipeline_config(settings, profile, None, None, False)
        pipeline = build_pipeline(settings, config)
    except ScreenerError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    refresher = RotationRefresher(pipeline, market_hours_only=market_hours_only)
    try:
        summary = asyncio.run(_run_with_signals(pipeline, refresher.run(group)))
    except ScreenerError as e:
        error_console.print(f"\n[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if summary is None:
        console.print("[yellow]Outside market hours, nothing refreshed.[/yellow]")
        return
    _print_summary("Refresh Complete", summary)


@app.command()
def status() -> None:
    """Show the last run status document."""
    settings = _require_settings()
    current = StatusReporter(settings.status_path).read()
    style = _STATUS_STYLES.get(current.status, "white")

    table = Table(title="Import Status", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{current.status.value}[/{style}]")
    table.add_row("Message", current.message)
    table.add_row("Last run", current.last_run.isoformat() if current.last_run else "[dim]never[/dim]")
    table.add_row("Last error", current.last_error or "[dim]none[/dim]")
    for key, value in current.stats.items():
        if not isinstance(value, dict):
            table.add_row(key, str(value))
    console.print(table)


async def _with_store(settings: Settings, action: Any) -> Any:
    store = build_store(settings, PipelineConfig(flush_interval=None))
    async with store:
        return await action(store)


@app.command()
def show(
    symbol: Annotated[str, typer.Argument(help="Stock ticker symbol (e.g., AAPL)")],
) -> None:
    """Show one stored stock."""
    settings = _require_settings()
    symbol = symbol.upper().strip()
    try:
        record = asyncio.run(_with_store(settings, lambda store: store.get(symbol)))
    except ScreenerError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if record is None:
        error_console.print(f"[yellow]{symbol} is not in the store.[/yellow]")
        raise typer.Exit(1)

    table = Table(title=symbol, show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in record.to_document().items():
        display_value = str(value) if value is not None else "[dim]null[/dim]"
        table.add_row(key, display_value)
    console.print(table)


@app.command()
def delete(
    symbol: Annotated[str, typer.Argument(help="Stock ticker symbol to delete")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete one stored stock."""
    settings = _require_settings()
    symbol = symbol.upper().strip()
    if not yes:
        typer.confirm(f"Delete {symbol} from the store?", abort=True)
    try:
        removed = asyncio.run(_with_store(settings, lambda store: store.delete(symbol)))
    except ScreenerError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not removed:
        error_console.print(f"[yellow]{symbol} was not in the store.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Deleted {symbol}.[/green]")


@app.command()
def stats() -> None:
    """Show store totals per exchange."""
    settings = _require_settings()
    try:
        totals = asyncio.run(_with_store(settings, lambda store: store.stats()))
    except ScreenerError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Stock Store ({settings.STORAGE_BACKEND})", show_header=True)
    table.add_column("Exchange", style="cyan")
    table.add_column("Stocks", style="green", justify="right")
    for exchange, count in sorted(totals["byExchange"].items()):
        table.add_row(exchange, str(count))
    table.add_row("[bold]Total[/bold]", f"[bold]{totals['total']}[/bold]")
    console.print(table)
    console.print(f"[dim]Last updated:[/dim] {totals['lastUpdated'] or 'never'}")


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with API keys redacted.
    """
    console.print()
    console.print("[bold]Stock Screener Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        error_console.print()
        error_console.print("Provider API keys:")
        error_console.print("  - POLYGON_API_KEY (PROVIDER=polygon, the default)")
        error_console.print("  - FMP_API_KEY (PROVIDER=fmp)")
        error_console.print()
        error_console.print("Create a .env file or set environment variables.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)

    console.print()
    try:
        settings.api_key_for()
        console.print(f"[bold]Provider:[/bold] {settings.PROVIDER} (key configured)")
    except ScreenerError:
        console.print(f"[yellow]No API key configured for provider {settings.PROVIDER}.[/yellow]")

    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"stock-screener version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
