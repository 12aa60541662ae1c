"""
Dict-backed store adapter.

Satisfies the full adapter contract with native range filters. Used as the
substitutable fake in tests and for ephemeral deployments.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from hybridstore.protocols import AdapterCapabilities, Collection, Page, Record, RecordFilter

from .keyset import paginate


class MemoryStore:
    """In-process key-value store keyed by collection and record id."""

    capabilities = AdapterCapabilities(supports_equality_filters=True, supports_range_filters=True)

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._data: Dict[Collection, Dict[str, Record]] = {c: {} for c in Collection}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def put(self, collection: Collection, record: Record) -> None:
        async with self._lock:
            self._data[collection][record.record_id] = record

    async def get(self, collection: Collection, record_id: str) -> Optional[Record]:
        return self._data[collection].get(record_id)

    async def list(
        self,
        collection: Collection,
        record_filter: Optional[RecordFilter] = None,
        page_token: Optional[str] = None,
        limit: int = 100,
    ) -> Page:
        record_filter = record_filter or RecordFilter()
        matching = [r for r in self._data[collection].values() if record_filter.matches(r)]
        return paginate(matching, page_token, limit, record_filter.descending)

    async def delete(self, collection: Collection, record_id: str) -> bool:
        async with self._lock:
            return self._data[collection].pop(record_id, None) is not None

    async def count(self, collection: Collection) -> int:
        return len(self._data[collection])
