"""
Structured logging for the screener import pipeline.

Provides:
- Context variables for run_id, phase and symbol (using contextvars)
- JSONFormatter for machine-readable logs to file
- ContextRichHandler for pretty console output
- ContextLogger wrapper that accepts structured keyword fields
- setup_logging() that configures both file and console handlers
- log_context() for scoped context
- get_logger() factory
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import partialmethod
from pathlib import Path
from typing import Any, Generator

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

_run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
_phase_var: ContextVar[str | None] = ContextVar("phase", default=None)
_symbol_var: ContextVar[str | None] = ContextVar("symbol", default=None)

ROOT_LOGGER = "screener"


def get_run_id() -> str | None:
    """Get the current run ID from context."""
    return _run_id_var.get()


def get_phase() -> str | None:
    """Get the current pipeline phase from context."""
    return _phase_var.get()


def get_symbol() -> str | None:
    """Get the symbol currently being processed from context."""
    return _symbol_var.get()


def _current_context() -> dict[str, str]:
    context: dict[str, str] = {}
    for key, var in (("run_id", _run_id_var), ("phase", _phase_var), ("symbol", _symbol_var)):
        value = var.get()
        if value:
            context[key] = value
    return context


@contextmanager
def log_context(
    run_id: str | None = None,
    phase: str | None = None,
    symbol: str | None = None,
) -> Generator[None, None, None]:
    """Context manager for scoped logging context.

    Only the values passed are changed; the previous values are restored on
    exit. Tasks created inside the block inherit the context.
    """
    tokens = []
    if run_id is not None:
        tokens.append((_run_id_var, _run_id_var.set(run_id)))
    if phase is not None:
        tokens.append((_phase_var, _phase_var.set(phase)))
    if symbol is not None:
        tokens.append((_symbol_var, _symbol_var.set(symbol)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context, fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            entry.update(fields)
        else:
            entry.update(_current_context())

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(entry, default=str).decode()


class ContextRichHandler(RichHandler):
    """Rich handler that prefixes the level with run/phase/symbol context."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)

        parts: list[str] = []
        run_id = get_run_id()
        phase = get_phase()
        symbol = get_symbol()

        if run_id:
            parts.append(f"[dim]{run_id.split('_')[-1][:8]}[/dim]")
        if phase:
            parts.append(f"[cyan]{phase}[/cyan]")
        if symbol:
            parts.append(f"[magenta]{symbol}[/magenta]")

        if parts:
            return Text.from_markup(f"{level_text} {' '.join(parts)}")
        return level_text

    def render_message(self, record: logging.LogRecord, message: str) -> Any:
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            shown = {k: v for k, v in fields.items() if k not in ("run_id", "phase", "symbol")}
            if shown:
                message = f"{message} " + " ".join(f"{k}={v}" for k, v in shown.items())
        return super().render_message(record, message)


class ContextLogger:
    """Logger wrapper taking structured fields as keyword arguments.

    Usage:
        logger.info("Persisted chunk", records=100, concurrency=7)

    The current run/phase/symbol context is merged into the fields.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**_current_context(), **fields}
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": merged})

    debug = partialmethod(log, logging.DEBUG)
    info = partialmethod(log, logging.INFO)
    warning = partialmethod(log, logging.WARNING)
    error = partialmethod(log, logging.ERROR)
    exception = partialmethod(log, logging.ERROR, exc_info=True)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the shared stderr console used for log output."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the screener logger tree.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: JSON-lines file that receives every record at DEBUG and up.
        console_output: Attach the rich console handler.
    """
    global _setup_done

    level = logging.getLevelName(log_level.upper())
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.handlers.clear()
    root_logger.propagate = False

    handlers: list[logging.Handler] = []
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)
    if console_output:
        console_handler = ContextRichHandler(
            console=get_console(),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        console_handler.setLevel(level)
        handlers.append(console_handler)

    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if log_file else level)

    # Client libraries log every request at INFO.
    for noisy in ("httpx", "httpcore", "yfinance", "peewee", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger under the screener namespace.

    Args:
        name: Logger name (usually __name__).
    """
    if not _setup_done:
        setup_logging()

    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return ContextLogger(logging.getLogger(name))
