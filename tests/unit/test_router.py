"""
Tests for primary-first reads and merged two-tier listings.
"""

import asyncio

import pytest
from hybridstore.config import RouterConfig
from hybridstore.exceptions import ArchiveDegraded, NotFound, StoreUnavailable
from hybridstore.protocols import AdapterCapabilities, Collection, FieldRange, RecordFilter, Tier
from hybridstore.storage import MemoryStore
from hybridstore.tiering import MergedCursor, QueryRouter

from tests.helpers import FaultyStore, make_record, metric_delta

ORDERS = Collection.ORDERS


def _ids(page):
    return [r.record_id for r in page.records]


async def _collect(router, record_filter=None, limit=None):
    pages = []
    token = None
    while True:
        page = await router.list(ORDERS, record_filter, token, limit)
        pages.append(_ids(page))
        token = page.next_token
        if token is None:
            return pages


@pytest.fixture
def make_router(primary, archive, retry_policy, breaker):
    def _make(archive_store=None, **router):
        return QueryRouter(primary, archive_store or archive, RouterConfig(**router), retry_policy, breaker)

    return _make


@pytest.fixture
async def split_tiers(primary, archive):
    """Primary holds minutes 10, 20, 30; the archive holds 5 and 15."""
    for minute in (10, 20, 30):
        await primary.inner.put(ORDERS, make_record(minute))
    for minute in (5, 15):
        await archive.inner.put(ORDERS, make_record(minute))


@pytest.mark.unit
class TestRouterGet:
    @pytest.mark.asyncio
    async def test_primary_hit_skips_archive(self, make_router, primary, archive):
        await primary.inner.put(ORDERS, make_record(1, tier="primary"))
        await archive.inner.put(ORDERS, make_record(1, tier="archive"))

        record = await make_router().get(ORDERS, "r0001")

        assert record.data["tier"] == "primary"
        assert archive.calls["get"] == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_archive(self, make_router, archive):
        await archive.inner.put(ORDERS, make_record(1))
        assert (await make_router().get(ORDERS, "r0001")).record_id == "r0001"

    @pytest.mark.asyncio
    async def test_absent_from_both_tiers(self, make_router):
        with pytest.raises(NotFound) as exc_info:
            await make_router().get(ORDERS, "missing")
        assert exc_info.value.record_id == "missing"

    @pytest.mark.asyncio
    async def test_archive_down_raises_degraded(self, make_router, archive):
        archive.failing.add("get")

        with metric_delta("degraded_reads_total", 1, collection="orders", tier="archive"):
            with pytest.raises(ArchiveDegraded) as exc_info:
                await make_router().get(ORDERS, "r0001")
        assert isinstance(exc_info.value.cause, StoreUnavailable)

    @pytest.mark.asyncio
    async def test_archive_down_does_not_affect_primary_hits(self, make_router, primary, archive):
        await primary.inner.put(ORDERS, make_record(1))
        archive.failing.add("get")
        assert (await make_router().get(ORDERS, "r0001")).record_id == "r0001"

    @pytest.mark.asyncio
    async def test_primary_down_served_from_archive(self, make_router, primary, archive):
        await archive.inner.put(ORDERS, make_record(1))
        primary.failing.add("get")
        assert (await make_router().get(ORDERS, "r0001")).record_id == "r0001"

    @pytest.mark.asyncio
    async def test_both_tiers_down(self, make_router, primary, archive):
        primary.failing.add("get")
        archive.failing.add("get")

        with pytest.raises(StoreUnavailable) as exc_info:
            await make_router().get(ORDERS, "r0001")
        assert exc_info.value.tier == Tier.PRIMARY

    @pytest.mark.asyncio
    async def test_primary_down_and_archive_miss(self, make_router, primary):
        primary.failing.add("get")
        with pytest.raises(StoreUnavailable):
            await make_router().get(ORDERS, "r0001")


@pytest.mark.unit
class TestRouterList:
    @pytest.mark.asyncio
    async def test_merges_tiers_in_creation_order(self, make_router, split_tiers):
        page = await make_router().list(ORDERS)

        assert _ids(page) == ["r0005", "r0010", "r0015", "r0020", "r0030"]
        assert page.next_token is None
        assert not page.degraded

    @pytest.mark.asyncio
    async def test_pages_across_tiers(self, make_router, split_tiers):
        pages = await _collect(make_router(), limit=2)
        assert pages == [["r0005", "r0010"], ["r0015", "r0020"], ["r0030"]]

    @pytest.mark.asyncio
    async def test_descending_order(self, make_router, split_tiers):
        pages = await _collect(make_router(), RecordFilter(descending=True), limit=2)
        assert pages == [["r0030", "r0020"], ["r0015", "r0010"], ["r0005"]]

    @pytest.mark.asyncio
    async def test_primary_copy_wins_duplicates(self, make_router, primary, archive):
        await primary.inner.put(ORDERS, make_record(1, tier="primary"))
        await archive.inner.put(ORDERS, make_record(1, tier="archive"))
        await archive.inner.put(ORDERS, make_record(2, tier="archive"))

        page = await make_router().list(ORDERS)

        assert _ids(page) == ["r0001", "r0002"]
        assert page.records[0].data["tier"] == "primary"

    @pytest.mark.asyncio
    async def test_filters_apply_to_both_tiers(self, make_router, primary, archive):
        await primary.inner.put(ORDERS, make_record(3, status="delivered"))
        await primary.inner.put(ORDERS, make_record(4, status="pending"))
        await archive.inner.put(ORDERS, make_record(1, status="delivered"))
        await archive.inner.put(ORDERS, make_record(2, status="cancelled"))

        page = await make_router().list(ORDERS, RecordFilter(equals={"status": "delivered"}))

        assert _ids(page) == ["r0001", "r0003"]

    @pytest.mark.asyncio
    async def test_range_filter_on_exact_only_archive(self, make_router, primary):
        exact_only = FaultyStore(MemoryStore(), AdapterCapabilities(supports_range_filters=False))
        for minute, total in [(1, 5), (2, 50)]:
            await exact_only.inner.put(ORDERS, make_record(minute, total=total))
        await primary.inner.put(ORDERS, make_record(3, total=70))

        record_filter = RecordFilter(equals={"kind": None}, ranges={"total": FieldRange(gte=10)})
        page = await make_router(archive_store=exact_only).list(ORDERS, record_filter)

        assert _ids(page) == ["r0002", "r0003"]
        assert all(f.is_exact_only for f in exact_only.list_filters)
        assert exact_only.list_filters[0].equals == {"kind": None}

    @pytest.mark.asyncio
    async def test_archive_failure_degrades_to_primary(self, make_router, primary, archive, split_tiers):
        archive.failing.add("list")

        with metric_delta("degraded_reads_total", 1, collection="orders", tier="archive"):
            page = await make_router().list(ORDERS)

        assert page.degraded
        assert _ids(page) == ["r0010", "r0020", "r0030"]
        assert page.next_token is None

    @pytest.mark.asyncio
    async def test_primary_failure_degrades_to_archive(self, make_router, primary, archive, split_tiers):
        primary.failing.add("list")

        with metric_delta("degraded_reads_total", 1, collection="orders", tier="primary"):
            page = await make_router().list(ORDERS)

        assert page.degraded
        assert _ids(page) == ["r0005", "r0015"]
        assert page.next_token is None

    @pytest.mark.asyncio
    async def test_archive_result_is_kept_when_primary_fails_first(self, make_router, primary, archive, split_tiers):
        primary.failing.add("list")
        gate = archive.block("list")
        router = make_router()

        task = asyncio.create_task(router.list(ORDERS))
        while primary.calls["list"] < 2 or archive.calls["list"] < 1:
            await asyncio.sleep(0)
        # The primary has already given up while the archive scan is still running
        assert not task.done()
        gate.set()
        page = await task

        assert page.degraded
        assert _ids(page) == ["r0005", "r0015"]

    @pytest.mark.asyncio
    async def test_list_with_both_tiers_down(self, make_router, primary, archive, split_tiers):
        primary.failing.add("list")
        archive.failing.add("list")

        with pytest.raises(StoreUnavailable) as exc_info:
            await make_router().list(ORDERS)
        assert exc_info.value.tier == Tier.PRIMARY

    @pytest.mark.asyncio
    async def test_cancelled_list_leaves_no_state(self, make_router, primary, archive, split_tiers):
        gate = archive.block("list")
        router = make_router()

        task = asyncio.create_task(router.list(ORDERS))
        while archive.calls["list"] < 1:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        gate.set()

        assert await primary.inner.count(ORDERS) == 3
        assert await archive.inner.count(ORDERS) == 2
        assert router.breaker.get_state()["state"] == "closed"
        page = await router.list(ORDERS)
        assert _ids(page) == ["r0005", "r0010", "r0015", "r0020", "r0030"]
        assert not page.degraded

    @pytest.mark.asyncio
    async def test_archive_scan_budget_yields_continuation(self, make_router):
        exact_only = FaultyStore(MemoryStore(), AdapterCapabilities(supports_range_filters=False))
        for minute in range(1, 7):
            await exact_only.inner.put(ORDERS, make_record(minute, total=minute))
        router = make_router(archive_store=exact_only, archive_scan_limit=3)
        record_filter = RecordFilter(ranges={"total": FieldRange(gte=6)})

        first = await router.list(ORDERS, record_filter, limit=2)
        assert first.records == []
        assert first.next_token is not None

        second = await router.list(ORDERS, record_filter, first.next_token, limit=2)
        assert _ids(second) == ["r0006"]
        assert second.next_token is None

    @pytest.mark.asyncio
    async def test_records_created_between_pages_appear_later(self, make_router, primary, split_tiers):
        router = make_router()
        first = await router.list(ORDERS, limit=2)
        await primary.inner.put(ORDERS, make_record(40))

        second = await router.list(ORDERS, page_token=first.next_token, limit=10)

        assert _ids(second) == ["r0015", "r0020", "r0030", "r0040"]

    @pytest.mark.asyncio
    async def test_limit_is_capped(self, make_router, primary):
        for minute in range(5):
            await primary.inner.put(ORDERS, make_record(minute))
        page = await make_router(default_page_size=2, max_page_size=3).list(ORDERS, limit=100)
        assert len(page.records) == 3

    @pytest.mark.asyncio
    async def test_token_for_opposite_order_is_rejected(self, make_router, split_tiers):
        router = make_router()
        first = await router.list(ORDERS, limit=2)
        with pytest.raises(ValueError):
            await router.list(ORDERS, RecordFilter(descending=True), first.next_token)

    @pytest.mark.asyncio
    async def test_malformed_token_is_rejected(self, make_router):
        with pytest.raises(ValueError):
            await make_router().list(ORDERS, page_token="bm90IGpzb24=")


@pytest.mark.unit
class TestMergedCursor:
    def test_round_trip(self):
        cursor = MergedCursor(descending=True, last=make_record(3).sort_key)
        cursor.tiers[Tier.ARCHIVE].done = True

        decoded = MergedCursor.decode(cursor.encode())

        assert decoded.descending
        assert decoded.last == cursor.last
        assert decoded.tiers[Tier.ARCHIVE].done
        assert decoded.tiers[Tier.PRIMARY].token is None
