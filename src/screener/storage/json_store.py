"""
JSON snapshot store.

Keeps every record in memory, merged on open with the snapshot already on
disk, and writes the whole snapshot back periodically and on close. Writes
go to a temporary file that is renamed over the snapshot, so a crash leaves
the previous snapshot intact.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path

import orjson

from screener.exceptions import PersistenceError
from screener.logging import get_logger
from screener.storage.base import RecordStore
from screener.types import EnrichedStockRecord

logger = get_logger(__name__)


def atomic_write_json(path: Path, payload: object) -> None:
    """Serialize payload to path through a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    data = orjson.dumps(payload, option=orjson.OPT_INDENT_2)
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


class JsonFileStore(RecordStore):
    """Record store backed by a single JSON array of documents.

    Args:
        path: Snapshot file (e.g. data/all_stocks.json).
        flush_interval: Seconds between background flushes; None disables them.
        overwrite_nulls: Let incoming null fields erase stored values.
    """

    backend = "json"

    def __init__(
        self,
        path: str | Path,
        flush_interval: float | None = 60.0,
        overwrite_nulls: bool = False,
    ) -> None:
        super().__init__(overwrite_nulls=overwrite_nulls)
        self.path = Path(path)
        self.flush_interval = flush_interval
        self._records: dict[str, EnrichedStockRecord] = {}
        self._dirty = False
        self._flush_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        self._records = await asyncio.to_thread(self._load)
        self._opened = True
        logger.info("Loaded stock snapshot", path=str(self.path), records=len(self._records))
        if self.flush_interval:
            self._flush_task = asyncio.create_task(self._flush_periodically(), name="json-flush")

    def _load(self) -> dict[str, EnrichedStockRecord]:
        if not self.path.exists():
            return {}
        try:
            documents = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise PersistenceError(
                "Existing stock snapshot is unreadable",
                context={"backend": self.backend, "path": str(self.path), "error": str(e)},
            ) from e

        records: dict[str, EnrichedStockRecord] = {}
        for doc in documents if isinstance(documents, list) else []:
            if isinstance(doc, dict) and doc.get("symbol"):
                record = EnrichedStockRecord.from_document(doc)
                records[record.symbol] = record
        return records

    async def _flush_periodically(self) -> None:
        assert self.flush_interval is not None
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except PersistenceError as e:
                logger.warning("Periodic snapshot flush failed", error=str(e))

    async def close(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        if self._opened:
            await self.flush()
        self._opened = False

    async def flush(self) -> None:
        """Write the snapshot if anything changed since the last flush.

        Raises:
            PersistenceError: If the snapshot cannot be written.
        """
        async with self._flush_lock:
            if not self._dirty:
                return
            documents = [self._records[s].to_document() for s in sorted(self._records)]
            self._dirty = False
            try:
                await asyncio.to_thread(atomic_write_json, self.path, documents)
            except OSError as e:
                self._dirty = True
                raise PersistenceError(
                    "Failed to write stock snapshot",
                    context={"backend": self.backend, "path": str(self.path), "error": str(e)},
                ) from e
            logger.debug("Snapshot flushed", path=str(self.path), records=len(documents))

    async def upsert(self, records: list[EnrichedStockRecord]) -> int:
        for record in records:
            existing = self._records.get(record.symbol)
            self._records[record.symbol] = record.merged_into(existing, self.overwrite_nulls)
        if records:
            self._dirty = True
        return len(records)

    async def get(self, symbol: str) -> EnrichedStockRecord | None:
        return self._records.get(symbol.strip().upper())

    async def delete(self, symbol: str) -> bool:
        removed = self._records.pop(symbol.strip().upper(), None)
        if removed is None:
            return False
        self._dirty = True
        await self.flush()
        return True

    async def all_records(self) -> list[EnrichedStockRecord]:
        return [self._records[s] for s in sorted(self._records)]

    async def count(self) -> int:
        return len(self._records)
