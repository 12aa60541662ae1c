"""
Query router: serves reads across both tiers as if they were one store.

``get`` asks the primary first and falls back to the archive. ``list`` merges
keyset-ordered scans of both tiers, dropping archive copies of records the
primary still holds, and hands back a continuation token carrying the
position of each tier.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog

from hybridstore.config.config import RouterConfig
from hybridstore.exceptions import ArchiveDegraded, NotFound, StoreUnavailable
from hybridstore.observability import increment
from hybridstore.protocols import (
    Collection,
    Record,
    RecordFilter,
    ResultPage,
    StoreAdapter,
    Tier,
    format_timestamp,
    parse_timestamp,
)
from hybridstore.storage.keyset import SortKey, after_key

from .circuit_breaker import CircuitBreaker
from .retry import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CURSOR_VERSION = 1


@dataclass
class TierCursor:
    """Resume position of one tier: the adapter page to (re)fetch, or exhausted."""

    token: Optional[str] = None
    done: bool = False


@dataclass
class MergedCursor:
    """Continuation state of a merged two-tier scan."""

    descending: bool = False
    last: Optional[SortKey] = None
    tiers: Dict[Tier, TierCursor] = field(default_factory=lambda: {t: TierCursor() for t in Tier})

    def encode(self) -> str:
        payload = {
            "v": CURSOR_VERSION,
            "desc": self.descending,
            "last": [format_timestamp(self.last[0]), self.last[1]] if self.last else None,
            "tiers": {t.value: {"token": c.token, "done": c.done} for t, c in self.tiers.items()},
        }
        raw = json.dumps(payload, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> MergedCursor:
        try:
            payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
            if payload.get("v") != CURSOR_VERSION:
                raise ValueError(f"unsupported cursor version {payload.get('v')!r}")
            last = payload["last"]
            tiers = {t: payload["tiers"][t.value] for t in Tier}
            return cls(
                descending=bool(payload["desc"]),
                last=(parse_timestamp(last[0]), str(last[1])) if last else None,
                tiers={t: TierCursor(token=state["token"], done=bool(state["done"])) for t, state in tiers.items()},
            )
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            raise ValueError(f"Malformed page token: {token!r}") from e


class _Stalled(Exception):
    """The archive scan budget of this call is spent."""


class _TierScan:
    """Buffered keyset scan of one tier, resumable from a :class:`TierCursor`."""

    def __init__(
        self,
        tier: Tier,
        fetch: Callable[[Optional[str]], Awaitable[Any]],
        record_filter: RecordFilter,
        cursor: TierCursor,
        last: Optional[SortKey],
        scan_limit: Optional[int] = None,
    ) -> None:
        self.tier = tier
        self._fetch = fetch
        self._filter = record_filter
        self._last = last
        self._scan_limit = scan_limit

        self.page_token = cursor.token
        self.next_token: Optional[str] = None
        self.loaded = False
        self.done = cursor.done
        self.buffer: List[Record] = []
        self.scanned = 0

    async def peek(self) -> Optional[Record]:
        while not self.buffer and not self.done:
            if self.loaded:
                if self.next_token is None:
                    self.done = True
                    break
                self.page_token, self.loaded = self.next_token, False
            if self._scan_limit is not None and self.scanned >= self._scan_limit:
                raise _Stalled()
            await self._load()
        return self.buffer[0] if self.buffer else None

    def pop(self) -> Record:
        return self.buffer.pop(0)

    async def _load(self) -> None:
        page = await self._fetch(self.page_token)
        self.scanned += len(page.records)
        self.buffer = [
            r
            for r in page.records
            if after_key(r.sort_key, self._last, self._filter.descending) and self._filter.matches(r)
        ]
        self.next_token = page.next_token
        self.loaded = True

    def abandon(self) -> None:
        self.buffer = []
        self.done = True

    def cursor(self) -> TierCursor:
        if self.done and not self.buffer:
            return TierCursor(done=True)
        if self.buffer or not self.loaded:
            # Re-fetch the current page; keys up to the merged position are skipped
            return TierCursor(token=self.page_token)
        if self.next_token is None:
            return TierCursor(done=True)
        return TierCursor(token=self.next_token)


class QueryRouter:
    """Primary-first reads with archive fallback and merged listings."""

    def __init__(
        self,
        primary: StoreAdapter,
        archive: StoreAdapter,
        config: RouterConfig,
        retry: RetryPolicy,
        breaker: CircuitBreaker,
    ) -> None:
        self.primary = primary
        self.archive = archive
        self.config = config
        self.retry = retry
        self.breaker = breaker

    async def archive_call(self, operation: Callable[[], Awaitable[T]]) -> T:
        if not await self.breaker.can_execute():
            raise StoreUnavailable(Tier.ARCHIVE, "circuit breaker open")
        try:
            result = await self.retry.retry(Tier.ARCHIVE, operation)
        except StoreUnavailable:
            await self.breaker.record_failure()
            raise
        await self.breaker.record_success()
        return result

    # --- Point reads ---

    async def get(self, collection: Collection, record_id: str) -> Record:
        """
        Return the record from the primary, or from the archive when the primary lacks it.

        Raises:
            NotFound: absent from both tiers
            ArchiveDegraded: absent from the primary while the archive is unreachable
            StoreUnavailable: the primary is down and the archive does not hold the record
        """
        primary_error: Optional[StoreUnavailable] = None
        try:
            record = await self.retry.retry(Tier.PRIMARY, partial(self.primary.get, collection, record_id))
            if record is not None:
                return record
        except StoreUnavailable as e:
            primary_error = e
            logger.warning("Primary read failed, trying archive", collection=collection.value, error=str(e))

        try:
            record = await self.archive_call(partial(self.archive.get, collection, record_id))
        except StoreUnavailable as e:
            if primary_error is not None:
                raise primary_error from e
            increment("degraded_reads_total", labels={"collection": collection.value, "tier": Tier.ARCHIVE.value})
            raise ArchiveDegraded(f"archive unreachable while looking up {collection.value}/{record_id}", e) from e

        if record is not None:
            return record
        if primary_error is not None:
            raise primary_error
        raise NotFound(collection, record_id)

    # --- Merged listings ---

    async def list(
        self,
        collection: Collection,
        record_filter: Optional[RecordFilter] = None,
        page_token: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ResultPage:
        """
        Return one merged page ordered by ``(created_at, record_id)``.

        Filters the archive cannot evaluate natively are reduced to their
        exact-match part for the archive scan and applied client-side. At most
        ``archive_scan_limit`` archive rows are examined per call; a page cut
        short by that budget still carries a continuation token.

        A tier that cannot be reached is dropped from the scan and the page is
        marked ``degraded``; StoreUnavailable is raised only when neither
        tier answers.
        """
        record_filter = record_filter or RecordFilter()
        limit = min(limit or self.config.default_page_size, self.config.max_page_size)
        if limit < 1:
            raise ValueError("limit must be positive")

        cursor = MergedCursor.decode(page_token) if page_token else MergedCursor(descending=record_filter.descending)
        if cursor.descending != record_filter.descending:
            raise ValueError("Page token was issued for the opposite sort order")

        archive_filter = record_filter
        if not self.archive.capabilities.supports_range_filters:
            archive_filter = record_filter.exact_only()
        primary_filter = record_filter
        if not self.primary.capabilities.supports_range_filters:
            primary_filter = record_filter.exact_only()

        primary = _TierScan(
            Tier.PRIMARY,
            lambda token: self.retry.retry(
                Tier.PRIMARY, partial(self.primary.list, collection, primary_filter, token, limit)
            ),
            record_filter,
            cursor.tiers[Tier.PRIMARY],
            cursor.last,
        )
        archive = _TierScan(
            Tier.ARCHIVE,
            lambda token: self.archive_call(partial(self.archive.list, collection, archive_filter, token, limit)),
            record_filter,
            cursor.tiers[Tier.ARCHIVE],
            cursor.last,
            scan_limit=self.config.archive_scan_limit,
        )

        stalled = False
        failures: Dict[Tier, StoreUnavailable] = {}

        async def peek(scan: _TierScan) -> Optional[Record]:
            nonlocal stalled
            try:
                return await scan.peek()
            except _Stalled:
                stalled = True
                return None
            except StoreUnavailable as e:
                failures[scan.tier] = e
                scan.abandon()
                increment("degraded_reads_total", labels={"collection": collection.value, "tier": scan.tier.value})
                logger.warning(
                    "Tier unavailable, serving the other tier only",
                    collection=collection.value,
                    tier=scan.tier.value,
                    error=str(e),
                )
                return None

        records: List[Record] = []
        last = cursor.last
        heads = await asyncio.gather(peek(primary), peek(archive), return_exceptions=True)
        for head in heads:
            if isinstance(head, BaseException):
                raise head
        head_p, head_a = heads
        if len(failures) == len(Tier):
            raise failures[Tier.PRIMARY]
        while len(records) < limit and not stalled:
            if head_p is None and head_a is None:
                break
            if head_a is None or (
                head_p is not None and not after_key(head_p.sort_key, head_a.sort_key, record_filter.descending)
            ):
                chosen = primary.pop()
                if head_a is not None and head_a.sort_key == chosen.sort_key:
                    # Same record in both tiers: the primary copy wins
                    archive.pop()
            else:
                chosen = archive.pop()
            records.append(chosen)
            last = chosen.sort_key
            head_p = await peek(primary)
            head_a = await peek(archive)

        if stalled:
            logger.debug("Archive scan budget spent", collection=collection.value, scanned=archive.scanned)

        next_cursor = MergedCursor(
            descending=record_filter.descending,
            last=last,
            tiers={Tier.PRIMARY: primary.cursor(), Tier.ARCHIVE: archive.cursor()},
        )
        exhausted = all(c.done for c in next_cursor.tiers.values())
        return ResultPage(
            records=records,
            next_token=None if exhausted else next_cursor.encode(),
            degraded=bool(failures),
        )
