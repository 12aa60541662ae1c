"""
Manages the SQLite database backing the primary tier.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiosqlite
import structlog
from sqlalchemy import create_engine

from hybridstore.config.config import PrimaryStoreConfig
from hybridstore.protocols import (
    AdapterCapabilities,
    Collection,
    FieldRange,
    Page,
    Record,
    RecordFilter,
    format_timestamp,
    parse_timestamp,
)

from .keyset import decode_key, encode_key
from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# The current version of the database schema.
# This should be incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1

_COLUMNS = {"record_id": "record_id", "created_at": "created_at", "updated_at": "updated_at"}


def _sql_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def _field_expr(name: str) -> str:
    # Field names are validated by RecordFilter, so the JSON path is safe to inline.
    if name in _COLUMNS:
        return _COLUMNS[name]
    return f"json_extract(data, '$.{name}')"


def _where_clause(collection: Collection, record_filter: RecordFilter) -> Tuple[List[str], List[Any]]:
    conditions = ["collection = ?"]
    params: List[Any] = [collection.value]

    for name, expected in record_filter.equals.items():
        if expected is None:
            conditions.append(f"{_field_expr(name)} IS NULL")
        else:
            conditions.append(f"{_field_expr(name)} = ?")
            params.append(_sql_value(expected))

    for name, allowed in record_filter.one_of.items():
        values = list(allowed)
        if not values:
            conditions.append("0")
            continue
        conditions.append(f"{_field_expr(name)} IN ({', '.join('?' for _ in values)})")
        params.extend(_sql_value(v) for v in values)

    for name, bounds in record_filter.ranges.items():
        conditions.extend(_range_conditions(name, bounds, params))

    return conditions, params


def _range_conditions(name: str, bounds: FieldRange, params: List[Any]) -> List[str]:
    conditions = []
    if bounds.gte is not None:
        conditions.append(f"{_field_expr(name)} >= ?")
        params.append(_sql_value(bounds.gte))
    if bounds.lt is not None:
        conditions.append(f"{_field_expr(name)} < ?")
        params.append(_sql_value(bounds.lt))
    return conditions


def _row_to_record(row: aiosqlite.Row) -> Record:
    return Record(
        record_id=row["record_id"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]) if row["updated_at"] else None,
        data=json.loads(row["data"]) if row["data"] else {},
    )


class SQLiteStore:
    """Document-oriented primary store: one JSON document per (collection, record_id)."""

    capabilities = AdapterCapabilities(supports_equality_filters=True, supports_range_filters=True)

    def __init__(self, config: PrimaryStoreConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._connections: List[aiosqlite.Connection] = []

    async def initialize(self) -> None:
        """Creates the schema, then fills the connection pool."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self._create_schema)

        for _ in range(self.config.pool_size):
            conn = await self._create_connection()
            self._connections.append(conn)
            await self._pool.put(conn)

        async with self.get_connection() as conn:
            await self._run_migrations(conn)

    def _create_schema(self) -> None:
        engine = create_engine(f"sqlite:///{self.db_path}")
        try:
            db_metadata.create_all(engine)
        finally:
            engine.dispose()

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            self._pool.put_nowait(conn)

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Checks schema version and records it once the tables exist."""
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info(
                "Primary store schema upgraded",
                from_version=current_version,
                to_version=CURRENT_SCHEMA_VERSION,
                db_path=str(self.db_path),
            )
            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()

    async def put(self, collection: Collection, record: Record) -> None:
        payload = json.dumps(record.data)
        sql = (
            "INSERT INTO records (collection, record_id, created_at, updated_at, data) VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(collection, record_id) DO UPDATE SET "
            "created_at = excluded.created_at, updated_at = excluded.updated_at, data = excluded.data"
        )
        params = (
            collection.value,
            record.record_id,
            format_timestamp(record.created_at),
            format_timestamp(record.updated_at) if record.updated_at else None,
            payload,
        )
        async with self.get_connection() as conn:
            await conn.execute(sql, params)
            await conn.commit()

    async def get(self, collection: Collection, record_id: str) -> Optional[Record]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM records WHERE collection = ? AND record_id = ?",
                (collection.value, record_id),
            )
            row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def list(
        self,
        collection: Collection,
        record_filter: Optional[RecordFilter] = None,
        page_token: Optional[str] = None,
        limit: int = 100,
    ) -> Page:
        if limit < 1:
            raise ValueError("limit must be positive")
        record_filter = record_filter or RecordFilter()
        conditions, params = _where_clause(collection, record_filter)

        direction = "DESC" if record_filter.descending else "ASC"
        if page_token:
            created_at, record_id = decode_key(page_token)
            comparison = "<" if record_filter.descending else ">"
            conditions.append(f"(created_at, record_id) {comparison} (?, ?)")
            params.extend([format_timestamp(created_at), record_id])

        sql = (
            f"SELECT * FROM records WHERE {' AND '.join(conditions)} "
            f"ORDER BY created_at {direction}, record_id {direction} LIMIT ?"
        )
        params.append(limit + 1)

        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()

        records = [_row_to_record(row) for row in rows[:limit]]
        next_token = encode_key(records[-1].sort_key) if len(rows) > limit else None
        return Page(records=records, next_token=next_token)

    async def delete(self, collection: Collection, record_id: str) -> bool:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM records WHERE collection = ? AND record_id = ?",
                (collection.value, record_id),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def count(self, collection: Collection) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM records WHERE collection = ?", (collection.value,))
            row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def close(self) -> None:
        """Closes all connections in the pool."""
        for conn in self._connections:
            await conn.close()
        self._connections.clear()
        while not self._pool.empty():
            self._pool.get_nowait()
