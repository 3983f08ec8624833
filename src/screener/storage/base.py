"""
Record store interface.

Both backends keep one document per symbol and honour the same contract:
- upsert() is idempotent by symbol; incoming non-null fields replace stored
  ones, incoming nulls keep what is stored (unless overwrite_nulls is set)
- a failed or interrupted run never removes previously persisted records
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from typing import Any

from screener.types import EnrichedStockRecord


class RecordStore(ABC):
    """Abstract upsert-by-symbol store for enriched records."""

    backend: str = "abstract"

    def __init__(self, overwrite_nulls: bool = False) -> None:
        self.overwrite_nulls = overwrite_nulls

    @abstractmethod
    async def open(self) -> None:
        """Prepare the store (create files/tables, load snapshots)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending writes and release resources."""
        ...

    @abstractmethod
    async def upsert(self, records: list[EnrichedStockRecord]) -> int:
        """Insert or merge records by symbol. Returns the number written."""
        ...

    @abstractmethod
    async def get(self, symbol: str) -> EnrichedStockRecord | None:
        """Look up one symbol."""
        ...

    @abstractmethod
    async def delete(self, symbol: str) -> bool:
        """Administrative delete. Returns True if the symbol existed."""
        ...

    @abstractmethod
    async def all_records(self) -> list[EnrichedStockRecord]:
        """Every stored record, ordered by symbol."""
        ...

    async def flush(self) -> None:
        """Make accepted writes durable. No-op for write-through backends."""
        return None

    async def count(self) -> int:
        return len(await self.all_records())

    async def symbols(self) -> list[str]:
        return [record.symbol for record in await self.all_records()]

    async def complete_symbols(self) -> set[str]:
        """Symbols whose stored record already has price and every core ratio."""
        return {record.symbol for record in await self.all_records() if record.is_complete}

    async def stats(self) -> dict[str, Any]:
        """Totals per exchange and the most recent update time."""
        records = await self.all_records()
        by_exchange = Counter(record.exchange or "UNKNOWN" for record in records)
        last_updated = max((record.last_updated for record in records), default=None)
        return {
            "total": len(records),
            "nyse": by_exchange.get("XNYS", 0),
            "nasdaq": by_exchange.get("XNAS", 0),
            "byExchange": dict(by_exchange),
            "lastUpdated": last_updated.isoformat() if last_updated else None,
        }

    async def __aenter__(self) -> RecordStore:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
