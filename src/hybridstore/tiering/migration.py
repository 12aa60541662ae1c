"""
Migration engine: moves the oldest primary records into the archive.

A batch walks ``pending -> written-to-archive -> removed-from-primary``. A
record is deleted from the primary only after a follow-up ``get`` has
confirmed its copy in the archive, so every record is readable from at least
one tier at every step. Batch state is journaled after each step; after a
crash ``resume()`` picks every batch up from the step its status names.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from functools import partial
from typing import Dict, List, Optional, Set, Tuple
from weakref import WeakValueDictionary

import structlog

from hybridstore.config.config import CapacityConfig, MigrationConfig
from hybridstore.exceptions import MigrationIncomplete, StoreUnavailable
from hybridstore.observability import increment
from hybridstore.protocols import (
    BatchStatus,
    Collection,
    MigrationBatch,
    MigrationReport,
    MigrationTrigger,
    Record,
    RecordFilter,
    StoreAdapter,
    SupportsAppend,
    Tier,
    format_timestamp,
)

from .circuit_breaker import CircuitBreaker
from .journal import BatchJournal
from .retry import RetryPolicy

logger = structlog.get_logger(__name__)


def record_version(record: Record) -> Optional[str]:
    """Version marker compared between the primary and the archive copy."""
    return format_timestamp(record.updated_at) if record.updated_at else None


class MigrationEngine:
    """
    Executes migration batches for one pair of primary and archive adapters.

    Only one batch per collection runs at a time. Callers writing a record
    take :meth:`handoff` for that record so that the engine's final
    check-then-delete of it never interleaves with the caller's update.
    Writes to different records do not wait on each other.
    """

    def __init__(
        self,
        primary: StoreAdapter,
        archive: StoreAdapter,
        config: MigrationConfig,
        capacity_config: CapacityConfig,
        retry: RetryPolicy,
        breaker: CircuitBreaker,
        journal: BatchJournal,
    ) -> None:
        self.primary = primary
        self.archive = archive
        self.config = config
        self.capacity_config = capacity_config
        self.retry = retry
        self.breaker = breaker
        self.journal = journal

        self._locks: Dict[Collection, asyncio.Lock] = {c: asyncio.Lock() for c in Collection}
        # Entries disappear once no caller holds or waits on the lock
        self._handoff: WeakValueDictionary[Tuple[Collection, str], asyncio.Lock] = WeakValueDictionary()
        self._deleted: Dict[Collection, Set[str]] = {c: set() for c in Collection}

    # --- Coordination with the facade ---

    def is_active(self, collection: Collection) -> bool:
        return self._locks[collection].locked()

    def handoff(self, collection: Collection, record_id: str) -> asyncio.Lock:
        key = (collection, record_id)
        lock = self._handoff.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._handoff[key] = lock
        return lock

    def notify_deleted(self, collection: Collection, record_id: str) -> None:
        """Remember a caller delete so a late archive copy of the record is removed too."""
        if self.is_active(collection):
            self._deleted[collection].add(record_id)

    # --- Entry points ---

    async def run(self, trigger: MigrationTrigger) -> List[MigrationReport]:
        return await self.drain(trigger.collection, limit=trigger.target_size)

    async def drain(
        self,
        collection: Collection,
        limit: Optional[int] = None,
        created_before: Optional[datetime] = None,
    ) -> List[MigrationReport]:
        """
        Migrate up to ``limit`` of the oldest eligible records (all when None).

        Batches of the collection left ``written-to-archive`` by an earlier
        failed delete phase are finished first; their records do not count
        towards ``limit``. New records are then moved in batches of at most
        ``max_batch_size``. Draining stops at the first batch that does not
        complete.
        """
        reports: List[MigrationReport] = []
        async with self._locks[collection]:
            try:
                for batch in self.journal.in_progress(collection):
                    if batch.status != BatchStatus.WRITTEN_TO_ARCHIVE:
                        continue
                    report = await self._resume_batch(batch)
                    reports.append(report)
                    if not report.succeeded:
                        return reports

                remaining = limit
                while remaining is None or remaining > 0:
                    if self.breaker.is_open():
                        logger.warning("Migration suspended, archive circuit open", collection=collection.value)
                        increment(
                            "migration_batches_total",
                            labels={"collection": collection.value, "status": "suspended"},
                        )
                        break

                    size = self.config.max_batch_size
                    if remaining is not None:
                        size = min(remaining, size)
                    records = await self._select(collection, size, created_before)
                    if not records:
                        break

                    report = await self._run_batch(collection, records)
                    reports.append(report)
                    if not report.succeeded or len(records) < size:
                        break
                    if remaining is not None:
                        remaining -= len(records)
            finally:
                self._deleted[collection].clear()
        return reports

    async def resume(self) -> List[MigrationReport]:
        """Complete every journaled batch from the step its status names."""
        reports = []
        for batch in self.journal.in_progress():
            async with self._locks[batch.collection]:
                try:
                    reports.append(await self._resume_batch(batch))
                finally:
                    self._deleted[batch.collection].clear()
        return reports

    # --- Selection ---

    def _selection_filter(self, collection: Collection, created_before: Optional[datetime]) -> RecordFilter:
        record_filter = self.capacity_config.policy_for(collection).eligibility_filter() or RecordFilter()
        if created_before is not None:
            record_filter = record_filter.merged(RecordFilter.created_between(created_before=created_before))
        return record_filter

    async def _select(self, collection: Collection, size: int, created_before: Optional[datetime]) -> List[Record]:
        """Oldest ``size`` eligible records of the primary, skipping ids owned by journaled batches."""
        record_filter = self._selection_filter(collection, created_before)
        native = record_filter if self.primary.capabilities.supports_range_filters else record_filter.exact_only()
        owned = {rid for batch in self.journal.in_progress(collection) for rid in batch.record_ids}

        selected: List[Record] = []
        token: Optional[str] = None
        while len(selected) < size:
            page = await self.retry.retry(
                Tier.PRIMARY,
                partial(self.primary.list, collection, native, token, self.config.select_page_size),
            )
            selected.extend(r for r in page.records if record_filter.matches(r) and r.record_id not in owned)
            token = page.next_token
            if token is None:
                break
        return selected[:size]

    # --- Batch execution ---

    async def _run_batch(self, collection: Collection, records: List[Record]) -> MigrationReport:
        batch = MigrationBatch(collection=collection, record_ids=[r.record_id for r in records])
        await self.journal.record(batch)
        logger.info("Migration batch started", batch_id=batch.batch_id, collection=collection.value, size=len(records))
        return await self._drive(batch, {r.record_id: r for r in records}, resumed=False)

    async def _resume_batch(self, batch: MigrationBatch) -> MigrationReport:
        logger.info(
            "Resuming migration batch",
            batch_id=batch.batch_id,
            collection=batch.collection.value,
            status=batch.status.value,
        )
        records: Dict[str, Record] = {}
        if batch.status == BatchStatus.PENDING:
            for record_id in batch.unconfirmed_ids:
                record = await self.retry.retry(Tier.PRIMARY, partial(self.primary.get, batch.collection, record_id))
                if record is not None:
                    records[record_id] = record
            # Unconfirmed ids gone from the primary were deleted by callers
            confirmed = set(batch.confirmed_ids)
            batch.record_ids = [rid for rid in batch.record_ids if rid in confirmed or rid in records]
        return await self._drive(batch, records, resumed=True)

    async def _drive(self, batch: MigrationBatch, records: Dict[str, Record], resumed: bool) -> MigrationReport:
        report = MigrationReport(
            batch_id=batch.batch_id,
            collection=batch.collection,
            status=batch.status,
            selected=len(batch.record_ids),
            resumed=resumed,
        )
        try:
            if batch.status == BatchStatus.PENDING:
                await self._write_phase(batch, records)
                batch.transition(BatchStatus.WRITTEN_TO_ARCHIVE)
                await self.journal.record(batch)
            report.archived = len(batch.confirmed_ids)
            await self._delete_phase(batch, report)
            batch.transition(BatchStatus.REMOVED_FROM_PRIMARY)
            await self.journal.record(batch)
        except MigrationIncomplete as incomplete:
            report.archived = len(batch.confirmed_ids)
            if incomplete.resume_step == BatchStatus.PENDING:
                report.failed_ids = batch.unconfirmed_ids
                batch.transition(BatchStatus.FAILED)
                await self._release_archive_copies(batch)
                await self.journal.record(batch)
            logger.warning(
                "Migration batch incomplete",
                batch_id=batch.batch_id,
                collection=batch.collection.value,
                status=batch.status.value,
                remaining=incomplete.remaining,
                error=batch.last_error,
            )

        report.status = batch.status
        increment(
            "migration_batches_total",
            labels={"collection": batch.collection.value, "status": batch.status.value},
        )
        if report.removed:
            increment("records_migrated_total", report.removed, labels={"collection": batch.collection.value})
        if report.succeeded:
            logger.info(
                "Migration batch completed",
                batch_id=batch.batch_id,
                collection=batch.collection.value,
                archived=report.archived,
                removed=report.removed,
                resumed=resumed,
            )
        return report

    # --- Archive write phase ---

    async def _write_phase(self, batch: MigrationBatch, records: Dict[str, Record]) -> None:
        """Write and confirm every record, retrying the unconfirmed subset with backoff."""
        retrying = self.retry.retrying(
            attempts=self.config.archive_write_attempts,
            retry_on=(MigrationIncomplete, StoreUnavailable),
        )
        try:
            await retrying(self._write_round, batch, records)
        except StoreUnavailable as e:
            batch.last_error = str(e)
            raise MigrationIncomplete(batch.batch_id, BatchStatus.PENDING, len(batch.unconfirmed_ids)) from e

    async def _write_round(self, batch: MigrationBatch, records: Dict[str, Record]) -> None:
        batch.attempts += 1
        if not await self.breaker.can_execute():
            raise StoreUnavailable(Tier.ARCHIVE, "circuit breaker open")

        pending = [records[rid] for rid in batch.unconfirmed_ids]
        try:
            if isinstance(self.archive, SupportsAppend):
                await self.retry.call(Tier.ARCHIVE, partial(self.archive.append, batch.collection, pending))
            else:
                for record in pending:
                    await self.retry.call(Tier.ARCHIVE, partial(self.archive.put, batch.collection, record))
        except StoreUnavailable as e:
            # Writes that landed before the failure are still confirmed below
            batch.last_error = str(e)
            await self.breaker.record_failure()

        for record in pending:
            if await self._confirm(batch, record):
                batch.confirmed_ids.append(record.record_id)
                batch.versions[record.record_id] = record_version(record)
        await self.journal.record(batch)

        remaining = len(batch.unconfirmed_ids)
        if remaining:
            await self.breaker.record_failure()
            raise MigrationIncomplete(batch.batch_id, BatchStatus.PENDING, remaining)
        await self.breaker.record_success()

    async def _confirm(self, batch: MigrationBatch, record: Record) -> bool:
        try:
            stored = await self.retry.call(Tier.ARCHIVE, partial(self.archive.get, batch.collection, record.record_id))
        except StoreUnavailable as e:
            batch.last_error = str(e)
            await self.breaker.record_failure()
            return False
        return stored is not None and record_version(stored) == record_version(record)

    async def _release_archive_copies(self, batch: MigrationBatch) -> None:
        """Drop confirmed copies of a failed batch so each record keeps a single home."""
        for record_id in batch.confirmed_ids:
            try:
                await self.retry.call(Tier.ARCHIVE, partial(self.archive.delete, batch.collection, record_id))
            except StoreUnavailable as e:
                logger.warning(
                    "Could not release archive copy of failed batch",
                    batch_id=batch.batch_id,
                    record_id=record_id,
                    error=str(e),
                )

    # --- Primary delete phase ---

    async def _delete_phase(self, batch: MigrationBatch, report: MigrationReport) -> None:
        """Delete confirmed records from the primary, counting removals on ``report``."""
        failed: List[str] = []
        for record_id in batch.record_ids:
            try:
                if await self._remove_from_primary(batch, record_id):
                    report.removed += 1
            except StoreUnavailable as e:
                batch.last_error = str(e)
                failed.append(record_id)

        if failed:
            report.failed_ids = failed
            await self.journal.record(batch)
            raise MigrationIncomplete(batch.batch_id, BatchStatus.WRITTEN_TO_ARCHIVE, len(failed))

    async def _remove_from_primary(self, batch: MigrationBatch, record_id: str) -> bool:
        collection = batch.collection
        async with self.handoff(collection, record_id):
            current = await self.retry.retry(Tier.PRIMARY, partial(self.primary.get, collection, record_id))
            if current is None:
                if record_id in self._deleted[collection] and record_id not in batch.deleted_ids:
                    batch.deleted_ids.append(record_id)
                if record_id in batch.deleted_ids:
                    # Deleted by a caller while the batch was running
                    await self.retry.retry(Tier.ARCHIVE, partial(self.archive.delete, collection, record_id))
                return False

            if record_version(current) != batch.versions.get(record_id):
                await self._refresh_archive_copy(batch, current)
            return await self.retry.retry(Tier.PRIMARY, partial(self.primary.delete, collection, record_id))

    async def _refresh_archive_copy(self, batch: MigrationBatch, record: Record) -> None:
        """Re-write a record updated in the primary after its archive copy was confirmed."""
        await self.retry.retry(Tier.ARCHIVE, partial(self.archive.put, batch.collection, record))
        stored = await self.retry.retry(Tier.ARCHIVE, partial(self.archive.get, batch.collection, record.record_id))
        if stored is None or record_version(stored) != record_version(record):
            raise StoreUnavailable(Tier.ARCHIVE, f"refreshed copy of {record.record_id} not confirmed")
        batch.versions[record.record_id] = record_version(record)
