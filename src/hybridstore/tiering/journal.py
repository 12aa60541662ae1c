"""
Durable journal of in-progress migration batches.

Each batch that has not reached a terminal status is kept as one JSON file
named after its batch id. After a crash the migration engine reloads these
files and resumes each batch from the step its status names.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from hybridstore.protocols import BatchStatus, Collection, MigrationBatch
from hybridstore.utils.atomic import atomic_json_dump, cleanup_temp_files

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = frozenset({BatchStatus.REMOVED_FROM_PRIMARY, BatchStatus.FAILED})


class BatchJournal:
    """
    Keeps migration batches that still need work.

    With ``directory=None`` the journal lives in memory only, which is enough
    for tests and for deployments that accept re-running a batch after a
    crash.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory is not None else None
        self._batches: Dict[str, MigrationBatch] = {}
        self._lock = asyncio.Lock()

    def _path(self, batch_id: str) -> Path:
        assert self.directory is not None
        return self.directory / f"{batch_id}.json"

    async def load(self) -> List[MigrationBatch]:
        """Read every journaled batch from disk."""
        if self.directory is None:
            return self.in_progress()

        def _read_all() -> List[MigrationBatch]:
            self.directory.mkdir(parents=True, exist_ok=True)
            cleanup_temp_files(self.directory)
            batches = []
            for path in sorted(self.directory.glob("*.json")):
                try:
                    batches.append(MigrationBatch.from_dict(json.loads(path.read_text(encoding="utf-8"))))
                except (OSError, ValueError, KeyError) as e:
                    logger.error("Unreadable journal entry", path=str(path), error=str(e))
            return batches

        async with self._lock:
            for batch in await asyncio.to_thread(_read_all):
                if batch.status in TERMINAL_STATUSES:
                    continue
                self._batches[batch.batch_id] = batch
            if self._batches:
                logger.info("Loaded migration journal", batches=len(self._batches))
            return self.in_progress()

    async def record(self, batch: MigrationBatch) -> None:
        """Persist the batch's current status, or drop it once terminal."""
        if batch.status in TERMINAL_STATUSES:
            await self.complete(batch)
            return
        async with self._lock:
            if self.directory is not None:
                await atomic_json_dump(batch.to_dict(), self._path(batch.batch_id))
            self._batches[batch.batch_id] = batch

    async def complete(self, batch: MigrationBatch) -> None:
        async with self._lock:
            self._batches.pop(batch.batch_id, None)
            if self.directory is not None:
                await asyncio.to_thread(self._path(batch.batch_id).unlink, missing_ok=True)

    def in_progress(self, collection: Optional[Collection] = None) -> List[MigrationBatch]:
        batches = sorted(self._batches.values(), key=lambda b: b.created_at)
        if collection is not None:
            batches = [b for b in batches if b.collection == collection]
        return batches

    def get(self, batch_id: str) -> Optional[MigrationBatch]:
        return self._batches.get(batch_id)
