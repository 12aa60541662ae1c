"""
Hybrid storage facade: the single entry point the application layer talks to.

Writes land in the primary tier, the capacity monitor watches it fill up and
schedules migrations into the archive, and reads are served by the query
router across both tiers.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from hybridstore.config.config import Config
from hybridstore.exceptions import ArchiveDegraded, DuplicateRecord, HybridStoreError, NotFound, StoreUnavailable
from hybridstore.observability import increment, set_metrics_enabled
from hybridstore.protocols import (
    Collection,
    MigrationReport,
    MigrationTrigger,
    Record,
    RecordFilter,
    ResultPage,
    StoreAdapter,
    Tier,
    format_timestamp,
    utcnow,
)
from hybridstore.storage import MemoryStore, ParquetArchive, SQLiteStore
from hybridstore.tiering.capacity import CapacityMonitor
from hybridstore.tiering.circuit_breaker import CircuitBreaker
from hybridstore.tiering.journal import BatchJournal
from hybridstore.tiering.migration import MigrationEngine
from hybridstore.tiering.retry import RetryPolicy
from hybridstore.tiering.router import QueryRouter
from hybridstore.utils.atomic import atomic_json_dump

logger = structlog.get_logger(__name__)


class HybridStorage:
    """
    Presents a capacity-bounded primary store and an unbounded archive store
    as one logical dataset of orders, menu items and users.

    Usage:
        async with HybridStorage.from_config(load_config()) as storage:
            order = await storage.create(Collection.ORDERS, {"status": "pending"})
            page = await storage.list(Collection.ORDERS)
    """

    def __init__(
        self,
        primary: StoreAdapter,
        archive: StoreAdapter,
        config: Optional[Config] = None,
        journal: Optional[BatchJournal] = None,
    ) -> None:
        self.config = config or Config()
        self.primary = primary
        self.archive = archive
        set_metrics_enabled(self.config.monitoring.metrics_enabled)

        self.retry = RetryPolicy(self.config.retry, self.config.operation_timeout_seconds)
        self.breaker = CircuitBreaker("archive", self.config.circuit_breaker)
        self.capacity = CapacityMonitor(self.config.capacity)
        self.journal = journal or BatchJournal(self.config.migration.journal_path)
        self.engine = MigrationEngine(
            primary,
            archive,
            self.config.migration,
            self.config.capacity,
            self.retry,
            self.breaker,
            self.journal,
        )
        self.router = QueryRouter(primary, archive, self.config.router, self.retry, self.breaker)

        self._tasks: Dict[Collection, asyncio.Task[None]] = {}
        self.resumed: List[MigrationReport] = []

    @classmethod
    def from_config(cls, config: Config) -> HybridStorage:
        """Build the adapters named by the configuration."""
        primary: StoreAdapter
        archive: StoreAdapter
        primary = SQLiteStore(config.primary) if config.primary.backend == "sqlite" else MemoryStore("primary")
        archive = ParquetArchive(config.archive) if config.archive.backend == "parquet" else MemoryStore("archive")
        return cls(primary, archive, config)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        await self.primary.initialize()
        await self.archive.initialize()
        await self.journal.load()
        self.resumed = await self.resume_migrations()
        for collection in Collection:
            await self.capacity.reconcile(collection, self.primary)
        logger.info(
            "Hybrid storage initialized",
            primary=type(self.primary).__name__,
            archive=type(self.archive).__name__,
        )

    async def close(self) -> None:
        try:
            await self.wait_for_migrations()
        finally:
            await self.primary.close()
            await self.archive.close()

    async def __aenter__(self) -> HybridStorage:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # --- Writes ---

    async def create(self, collection: Collection, record: Union[Record, Mapping[str, Any]]) -> Record:
        """
        Store a new record in the primary tier.

        Caller-supplied ids are checked against both tiers; generated ids are
        fresh and skip the lookup.

        Raises:
            DuplicateRecord: either tier already holds the record id
            ArchiveDegraded: the archive could not be asked about a caller-supplied id
            StoreUnavailable: the primary write failed after retries
        """
        supplied_id = isinstance(record, Record) or "record_id" in record
        if not isinstance(record, Record):
            record = Record.new(record)
        try:
            if supplied_id:
                try:
                    await self.router.get(collection, record.record_id)
                except NotFound:
                    pass
                else:
                    raise DuplicateRecord(collection, record.record_id)
            await self.retry.retry(Tier.PRIMARY, partial(self.primary.put, collection, record))
        except HybridStoreError:
            self._count("create", collection, "error")
            raise
        self._count("create", collection, "ok")

        self.capacity.record_created(collection)
        if self.capacity.reconcile_due(collection):
            await self._reconcile_quietly(collection)
        trigger = self.capacity.evaluate(collection)
        if trigger is not None:
            self._schedule_migration(trigger)
        return record

    async def update(self, collection: Collection, record_id: str, patch: Mapping[str, Any]) -> Record:
        """
        Patch a record in whichever tier holds it. Archived records stay in the archive.

        Raises:
            NotFound: absent from both tiers
            StoreUnavailable: the tier holding the record could not be written
        """
        try:
            async with self.engine.handoff(collection, record_id):
                current = await self.retry.retry(Tier.PRIMARY, partial(self.primary.get, collection, record_id))
                if current is not None:
                    updated = current.patched(patch)
                    await self.retry.retry(Tier.PRIMARY, partial(self.primary.put, collection, updated))
                    self._count("update", collection, "ok")
                    return updated

                archived = await self.router.archive_call(partial(self.archive.get, collection, record_id))
                if archived is None:
                    raise NotFound(collection, record_id)
                updated = archived.patched(patch)
                await self.router.archive_call(partial(self.archive.put, collection, updated))
                self._count("update", collection, "ok")
                return updated
        except HybridStoreError:
            self._count("update", collection, "error")
            raise

    async def delete(self, collection: Collection, record_id: str) -> bool:
        """
        Delete a record from both tiers.

        Deleting an absent record succeeds. Returns whether any tier held the
        record. Raises StoreUnavailable only when neither tier could be reached.
        """
        errors: List[StoreUnavailable] = []
        removed_primary = removed_archive = False
        async with self.engine.handoff(collection, record_id):
            try:
                removed_primary = await self.retry.retry(
                    Tier.PRIMARY, partial(self.primary.delete, collection, record_id)
                )
            except StoreUnavailable as e:
                errors.append(e)
            try:
                removed_archive = await self.router.archive_call(partial(self.archive.delete, collection, record_id))
            except StoreUnavailable as e:
                errors.append(e)
            self.engine.notify_deleted(collection, record_id)

        if len(errors) == len(Tier):
            self._count("delete", collection, "error")
            raise errors[0]
        for error in errors:
            logger.warning(
                "Delete reached only one tier", collection=collection.value, record_id=record_id, error=str(error)
            )
        if removed_primary:
            self.capacity.record_removed(collection)
        self._count("delete", collection, "ok")
        return bool(removed_primary or removed_archive)

    # --- Reads ---

    async def get(self, collection: Collection, record_id: str) -> Record:
        try:
            record = await self.router.get(collection, record_id)
        except NotFound:
            self._count("get", collection, "not_found")
            raise
        except HybridStoreError:
            self._count("get", collection, "error")
            raise
        self._count("get", collection, "ok")
        return record

    async def list(
        self,
        collection: Collection,
        record_filter: Optional[RecordFilter] = None,
        page_token: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ResultPage:
        page = await self.router.list(collection, record_filter, page_token, limit)
        self._count("list", collection, "degraded" if page.degraded else "ok")
        return page

    # --- Migration control ---

    def _schedule_migration(self, trigger: MigrationTrigger) -> None:
        task = asyncio.create_task(self._run_migration(trigger), name=f"migrate-{trigger.collection.value}")
        self._tasks[trigger.collection] = task

    async def _run_migration(self, trigger: MigrationTrigger) -> None:
        collection = trigger.collection
        try:
            await self.engine.run(trigger)
        except HybridStoreError as e:
            logger.error("Background migration failed", collection=collection.value, error=str(e))
        finally:
            try:
                await self._reconcile_quietly(collection)
            finally:
                self.capacity.finish(collection)
                if self._tasks.get(collection) is asyncio.current_task():
                    del self._tasks[collection]

    async def _reconcile_quietly(self, collection: Collection) -> None:
        try:
            count = await self.retry.call(Tier.PRIMARY, partial(self.primary.count, collection))
        except StoreUnavailable as e:
            logger.warning("Capacity reconcile skipped", collection=collection.value, error=str(e))
            return
        self.capacity.set_count(collection, count)

    async def _forced_migration(
        self,
        collection: Collection,
        limit: Optional[int],
        created_before: Optional[datetime],
    ) -> List[MigrationReport]:
        # Coalesce with a threshold-triggered migration by letting it finish first
        task = self._tasks.get(collection)
        if task is not None:
            await asyncio.wait([task])
        began = self.capacity.try_begin(collection)
        try:
            return await self.engine.drain(collection, limit=limit, created_before=created_before)
        finally:
            await self._reconcile_quietly(collection)
            if began:
                self.capacity.finish(collection)

    async def archive_now(self, collection: Collection, limit: Optional[int] = None) -> List[MigrationReport]:
        """Migrate the oldest eligible records now, regardless of the threshold (all when no limit)."""
        logger.info("Forced migration requested", collection=collection.value, limit=limit)
        return await self._forced_migration(collection, limit, None)

    async def archive_older_than(self, collection: Collection, age: timedelta) -> List[MigrationReport]:
        """Migrate every eligible record created more than ``age`` ago."""
        cutoff = utcnow() - age
        logger.info("Age-based migration requested", collection=collection.value, cutoff=format_timestamp(cutoff))
        return await self._forced_migration(collection, None, cutoff)

    async def resume_migrations(self) -> List[MigrationReport]:
        reports = await self.engine.resume()
        if reports:
            logger.info(
                "Journaled migrations resumed",
                batches=len(reports),
                completed=sum(1 for r in reports if r.succeeded),
            )
        return reports

    async def wait_for_migrations(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks)

    # --- Maintenance ---

    async def stats(self) -> Dict[str, Any]:
        """Per-collection tier counts, capacity state and archive health."""
        collections: Dict[str, Any] = {}
        for collection, state in self.capacity.snapshot().items():
            primary_count = await self.retry.retry(Tier.PRIMARY, partial(self.primary.count, collection))
            try:
                archive_count: Optional[int] = await self.router.archive_call(
                    partial(self.archive.count, collection)
                )
            except StoreUnavailable:
                archive_count = None
            collections[collection.value] = {
                "primary": primary_count,
                "archive": archive_count,
                "threshold": state.threshold,
                "max_capacity": state.max_capacity,
                "fill_ratio": round(primary_count / state.max_capacity, 4),
                "migrating": state.in_flight,
            }
        return {
            "collections": collections,
            "archive_breaker": self.breaker.get_state(),
            "journaled_batches": len(self.journal.in_progress()),
        }

    async def backup(self, path: Union[str, Path]) -> Dict[str, int]:
        """
        Write a JSON snapshot of every collection across both tiers.

        Raises ArchiveDegraded rather than writing a partial snapshot.
        """
        snapshot: Dict[str, Any] = {
            "project": self.config.project_name,
            "version": self.config.version,
            "created_at": format_timestamp(utcnow()),
            "collections": {},
        }
        counts: Dict[str, int] = {}
        for collection in Collection:
            records: List[Dict[str, Any]] = []
            token: Optional[str] = None
            while True:
                page = await self.router.list(collection, page_token=token, limit=self.config.router.max_page_size)
                if page.degraded:
                    raise ArchiveDegraded(f"a tier was unreachable while backing up {collection.value}")
                records.extend(r.to_dict() for r in page.records)
                token = page.next_token
                if token is None:
                    break
            snapshot["collections"][collection.value] = records
            counts[collection.value] = len(records)

        await atomic_json_dump(snapshot, Path(path))
        logger.info("Backup written", path=str(path), **counts)
        return counts

    async def compact(self, collection: Collection) -> int:
        """Compact the archive's storage of a collection where the archive supports it."""
        compact = getattr(self.archive, "compact", None)
        if compact is None:
            return 0
        return await self.router.archive_call(partial(compact, collection))

    def _count(self, operation: str, collection: Collection, outcome: str) -> None:
        increment(
            "operations_total",
            labels={"operation": operation, "collection": collection.value, "outcome": outcome},
        )
