"""Store adapters for the primary and archive tiers."""

from __future__ import annotations

from .memory_store import MemoryStore
from .parquet_archive import ParquetArchive
from .schema import metadata as db_metadata
from .sqlite_store import SQLiteStore

__all__ = ["MemoryStore", "ParquetArchive", "SQLiteStore", "db_metadata"]
