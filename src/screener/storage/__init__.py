"""
Storage package.

- RecordStore: upsert-by-symbol interface
- JsonFileStore: JSON snapshot with periodic atomic flushes
- SqliteDocumentStore: aiosqlite document table
- StatusReporter: run status document
"""

from screener.storage.base import RecordStore
from screener.storage.json_store import JsonFileStore
from screener.storage.sqlite_store import SqliteDocumentStore
from screener.storage.status import StatusReporter

__all__ = ["JsonFileStore", "RecordStore", "SqliteDocumentStore", "StatusReporter"]
