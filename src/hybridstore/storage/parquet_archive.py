"""
Manages the Parquet archive tier.

The archive is row/sheet-oriented and append-only: every write appends an
immutable segment file of flat rows to the collection's directory. A record's
current state is the row with the highest segment sequence; a tombstone row
hides it. Reads are full scans with exact-match filtering only.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import pyarrow as pa
import pyarrow.parquet as pq
import structlog

from hybridstore.config.config import ArchiveStoreConfig
from hybridstore.protocols import (
    AdapterCapabilities,
    Collection,
    Page,
    Record,
    RecordFilter,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

from .keyset import paginate

logger = structlog.get_logger(__name__)

ARCHIVE_SCHEMA = pa.schema(
    [
        pa.field("record_id", pa.string(), nullable=False),
        pa.field("created_at", pa.string(), nullable=False),
        pa.field("updated_at", pa.string()),
        pa.field("written_at", pa.string(), nullable=False),
        pa.field("deleted", pa.bool_(), nullable=False),
        pa.field("payload", pa.string()),
    ]
)

_SEGMENT_NAME = re.compile(r"^(\d{12})-[0-9a-f]{32}\.parquet$")


@dataclass(frozen=True)
class _Segment:
    sequence: int
    path: Path


class ParquetArchive:
    """Handles writing to and scanning the Parquet archive tier."""

    capabilities = AdapterCapabilities(supports_equality_filters=True, supports_range_filters=False)

    def __init__(self, config: ArchiveStoreConfig):
        self.config = config
        self.base_path = Path(config.base_path)
        self._locks: Dict[Collection, asyncio.Lock] = {c: asyncio.Lock() for c in Collection}
        self._next_sequence: Dict[Collection, int] = {c: 1 for c in Collection}
        # Segments are immutable, so a decoded segment stays valid until it is unlinked
        self._segment_rows = lru_cache(maxsize=config.segment_cache_size)(self._load_segment)

    async def initialize(self) -> None:
        for collection in Collection:
            directory = self._collection_dir(collection)
            directory.mkdir(parents=True, exist_ok=True)
            segments = self._segments(collection)
            self._next_sequence[collection] = segments[-1].sequence + 1 if segments else 1

    async def close(self) -> None:
        self._segment_rows.cache_clear()

    def _collection_dir(self, collection: Collection) -> Path:
        return self.base_path / collection.value

    def _segments(self, collection: Collection) -> List[_Segment]:
        directory = self._collection_dir(collection)
        if not directory.exists():
            return []
        segments = []
        for path in directory.iterdir():
            match = _SEGMENT_NAME.match(path.name)
            if match:
                segments.append(_Segment(int(match.group(1)), path))
        return sorted(segments, key=lambda s: s.sequence)

    # --- Writes ---

    async def append(self, collection: Collection, records: Sequence[Record]) -> None:
        """Append one segment holding the given records."""
        if not records:
            return
        await self._write_rows(collection, [self._to_row(r) for r in records])

    async def put(self, collection: Collection, record: Record) -> None:
        await self.append(collection, [record])

    async def delete(self, collection: Collection, record_id: str) -> bool:
        async with self._locks[collection]:
            live = await self._live_rows(collection)
            row = live.get(record_id)
            if row is None:
                return False
            tombstone = dict(row, deleted=True, payload=None, written_at=format_timestamp(utcnow()))
            await self._write_segment(collection, [tombstone])
            return True

    async def _write_rows(self, collection: Collection, rows: List[Dict[str, Any]]) -> None:
        # Last write of a record within one append wins
        deduped = list({row["record_id"]: row for row in rows}.values())
        async with self._locks[collection]:
            await self._write_segment(collection, deduped)

    async def _write_segment(self, collection: Collection, rows: List[Dict[str, Any]]) -> Path:
        """Write rows as the next segment. Caller holds the collection lock."""
        sequence = self._next_sequence[collection]
        path = self._collection_dir(collection) / f"{sequence:012d}-{uuid4().hex}.parquet"
        tmp_path = path.with_name(f".{path.name}.tmp")
        path.parent.mkdir(parents=True, exist_ok=True)
        table = pa.Table.from_pylist(rows, schema=ARCHIVE_SCHEMA)

        def _write() -> None:
            pq.write_table(table, where=str(tmp_path), compression=self.config.compression)
            tmp_path.replace(path)

        # Run the synchronous pyarrow write operation in a separate thread
        await asyncio.to_thread(_write)
        self._next_sequence[collection] = sequence + 1
        return path

    def _to_row(self, record: Record) -> Dict[str, Any]:
        return {
            "record_id": record.record_id,
            "created_at": format_timestamp(record.created_at),
            "updated_at": format_timestamp(record.updated_at) if record.updated_at else None,
            "written_at": format_timestamp(utcnow()),
            "deleted": False,
            "payload": json.dumps(record.data),
        }

    # --- Reads ---

    @staticmethod
    def _load_segment(path: Path) -> List[Dict[str, Any]]:
        return pq.read_table(source=str(path)).to_pylist()

    async def _read_segment(self, path: Path) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._segment_rows, path)

    async def _live_rows(self, collection: Collection) -> Dict[str, Dict[str, Any]]:
        """Full scan: latest row per record id, tombstones removed."""
        latest: Dict[str, Dict[str, Any]] = {}
        for segment in self._segments(collection):
            for row in await self._read_segment(segment.path):
                latest[row["record_id"]] = row
        return {rid: row for rid, row in latest.items() if not row["deleted"]}

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Record:
        return Record(
            record_id=row["record_id"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]) if row["updated_at"] else None,
            data=json.loads(row["payload"]) if row["payload"] else {},
        )

    async def get(self, collection: Collection, record_id: str) -> Optional[Record]:
        row = (await self._live_rows(collection)).get(record_id)
        return self._from_row(row) if row is not None else None

    async def list(
        self,
        collection: Collection,
        record_filter: Optional[RecordFilter] = None,
        page_token: Optional[str] = None,
        limit: int = 100,
    ) -> Page:
        record_filter = record_filter or RecordFilter()
        if not record_filter.is_exact_only:
            raise ValueError("The archive store only evaluates exact-match filters")
        records = [self._from_row(row) for row in (await self._live_rows(collection)).values()]
        matching = [r for r in records if record_filter.matches(r)]
        return paginate(matching, page_token, limit, record_filter.descending)

    async def count(self, collection: Collection) -> int:
        return len(await self._live_rows(collection))

    # --- Maintenance ---

    async def compact(self, collection: Collection) -> int:
        """Rewrite all segments of a collection into one segment of live rows."""
        async with self._locks[collection]:
            old_segments = self._segments(collection)
            if len(old_segments) <= 1:
                return 0
            live = list((await self._live_rows(collection)).values())
            if live:
                await self._write_segment(collection, live)
            for segment in old_segments:
                segment.path.unlink(missing_ok=True)
            self._segment_rows.cache_clear()
            logger.info(
                "Archive collection compacted",
                collection=collection.value,
                segments_removed=len(old_segments),
                live_rows=len(live),
            )
            return len(old_segments)
