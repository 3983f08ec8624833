"""
SQLite document store.

One row per symbol holding the camelCase record document as JSON, plus the
exchange and update time as columns for the stats queries. Each upsert call
runs in a single transaction, so a chunk is written entirely or not at all.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import aiosqlite
import orjson

from screener.exceptions import PersistenceError
from screener.logging import get_logger
from screener.storage.base import RecordStore
from screener.types import EnrichedStockRecord

logger = get_logger(__name__)


class SqliteDocumentStore(RecordStore):
    """Record store backed by a document table in SQLite.

    Args:
        db_path: Database file (e.g. data/stocks.db).
        overwrite_nulls: Let incoming null fields erase stored values.
    """

    backend = "sqlite"

    def __init__(self, db_path: str | Path, overwrite_nulls: bool = False) -> None:
        super().__init__(overwrite_nulls=overwrite_nulls)
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection and create the schema."""
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS stocks (
                    symbol TEXT PRIMARY KEY,
                    exchange TEXT,
                    document TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_stocks_exchange ON stocks(exchange)"
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise self._error("Failed to open stock database", e) from e
        logger.info("Stock database initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SqliteDocumentStore not opened. Call open() first.")
        return self._db

    def _error(self, message: str, error: Exception) -> PersistenceError:
        return PersistenceError(
            message,
            context={"backend": self.backend, "path": str(self.db_path), "error": str(error)},
        )

    async def upsert(self, records: list[EnrichedStockRecord]) -> int:
        """Merge records into their stored documents in one transaction."""
        if not records:
            return 0
        db = self._conn()
        try:
            existing = await self._load_many([r.symbol for r in records])
            rows = []
            for record in records:
                merged = record.merged_into(existing.get(record.symbol), self.overwrite_nulls)
                existing[merged.symbol] = merged
                rows.append((
                    merged.symbol,
                    merged.exchange,
                    orjson.dumps(merged.to_document()).decode(),
                    merged.last_updated.isoformat(),
                ))
            await db.executemany(
                """
                INSERT INTO stocks (symbol, exchange, document, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    exchange = excluded.exchange,
                    document = excluded.document,
                    last_updated = excluded.last_updated
                """,
                rows,
            )
            await db.commit()
        except aiosqlite.Error as e:
            await db.rollback()
            raise self._error("Failed to upsert stock records", e) from e

        logger.debug("Upserted stock records", count=len(rows))
        return len(rows)

    async def _load_many(self, symbols: list[str]) -> dict[str, EnrichedStockRecord]:
        db = self._conn()
        placeholders = ",".join("?" for _ in symbols)
        cursor = await db.execute(
            f"SELECT document FROM stocks WHERE symbol IN ({placeholders})",
            symbols,
        )
        rows = await cursor.fetchall()
        records = [self._row_to_record(row) for row in rows]
        return {r.symbol: r for r in records}

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> EnrichedStockRecord:
        return EnrichedStockRecord.from_document(orjson.loads(row["document"]))

    async def get(self, symbol: str) -> EnrichedStockRecord | None:
        cursor = await self._conn().execute(
            "SELECT document FROM stocks WHERE symbol = ?",
            (symbol.strip().upper(),),
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def delete(self, symbol: str) -> bool:
        db = self._conn()
        try:
            cursor = await db.execute(
                "DELETE FROM stocks WHERE symbol = ?",
                (symbol.strip().upper(),),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise self._error("Failed to delete stock record", e) from e
        return cursor.rowcount > 0

    async def all_records(self) -> list[EnrichedStockRecord]:
        cursor = await self._conn().execute("SELECT document FROM stocks ORDER BY symbol")
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def count(self) -> int:
        cursor = await self._conn().execute("SELECT COUNT(*) FROM stocks")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def symbols(self) -> list[str]:
        cursor = await self._conn().execute("SELECT symbol FROM stocks ORDER BY symbol")
        return [row["symbol"] for row in await cursor.fetchall()]

    async def stats(self) -> dict[str, Any]:
        cursor = await self._conn().execute(
            "SELECT exchange, COUNT(*) AS n, MAX(last_updated) AS latest "
            "FROM stocks GROUP BY exchange"
        )
        rows = await cursor.fetchall()
        by_exchange = {(row["exchange"] or "UNKNOWN"): row["n"] for row in rows}
        latest = [row["latest"] for row in rows if row["latest"]]
        return {
            "total": sum(by_exchange.values()),
            "nyse": by_exchange.get("XNYS", 0),
            "nasdaq": by_exchange.get("XNAS", 0),
            "byExchange": by_exchange,
            "lastUpdated": max(latest) if latest else None,
        }
