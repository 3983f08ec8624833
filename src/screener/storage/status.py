"""
Run status document.

A small JSON document ({status, lastRun, lastError, message, stats}) that
the serving layer polls to show import progress. Writing it must never take
down a run, so report() logs failures instead of raising them.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import orjson

from screener.logging import get_logger
from screener.storage.json_store import atomic_write_json
from screener.types import RunStatus, RunStatusValue, utc_now

logger = get_logger(__name__)


class StatusReporter:
    """Reads and writes the run status document at path."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def report(
        self,
        status: RunStatusValue,
        message: str,
        stats: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RunStatus:
        """Write a new status document and return it.

        A failed write is logged at warning level; the caller keeps going.
        """
        document = RunStatus(
            status=status,
            message=message,
            last_run=utc_now(),
            last_error=error,
            stats=dict(stats or {}),
        )
        async with self._lock:
            try:
                await asyncio.to_thread(atomic_write_json, self.path, document.to_document())
            except (OSError, TypeError) as e:
                logger.warning(
                    "Failed to write status document",
                    path=str(self.path),
                    status=status.value,
                    error=str(e),
                )
        return document

    def read(self) -> RunStatus:
        """The last written status, or an idle default."""
        if not self.path.exists():
            return RunStatus()
        try:
            return RunStatus.from_document(orjson.loads(self.path.read_bytes()))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable status document", path=str(self.path), error=str(e))
            return RunStatus()
