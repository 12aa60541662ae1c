"""
Tests for the capacity monitor's counters and trigger decisions.
"""

import pytest
from hybridstore.config import CapacityConfig, CollectionPolicy
from hybridstore.protocols import Collection
from hybridstore.storage import MemoryStore
from hybridstore.tiering import CapacityMonitor

from tests.helpers import make_record, metric_delta, metric_value


@pytest.fixture
def monitor():
    return CapacityMonitor(
        CapacityConfig(default=CollectionPolicy(max_capacity=100, threshold=90, hysteresis=0.8, reconcile_every=5))
    )


def _fill(monitor, collection, count):
    for _ in range(count):
        monitor.record_created(collection)


@pytest.mark.unit
class TestCapacityMonitor:
    def test_threshold_defaults_to_fraction_of_capacity(self):
        monitor = CapacityMonitor(CapacityConfig(default=CollectionPolicy(max_capacity=1000)))
        state = monitor.state(Collection.ORDERS)
        assert state.threshold == 800
        assert state.max_capacity == 1000

    def test_per_collection_overrides(self):
        monitor = CapacityMonitor(
            CapacityConfig(
                default=CollectionPolicy(max_capacity=100, threshold=90),
                collections={Collection.USERS: CollectionPolicy(max_capacity=10, threshold=5)},
            )
        )
        assert monitor.state(Collection.USERS).threshold == 5
        assert monitor.state(Collection.ORDERS).threshold == 90

    def test_no_trigger_below_threshold(self, monitor):
        _fill(monitor, Collection.ORDERS, 89)
        assert monitor.evaluate(Collection.ORDERS) is None
        assert not monitor.state(Collection.ORDERS).in_flight

    def test_trigger_at_threshold_sizes_batch_by_hysteresis(self, monitor):
        _fill(monitor, Collection.ORDERS, 90)

        with metric_delta("migration_triggers_total", 1, collection="orders", outcome="raised"):
            trigger = monitor.evaluate(Collection.ORDERS)

        assert trigger is not None
        assert trigger.collection == Collection.ORDERS
        # Drain down to floor(90 * 0.8) = 72
        assert trigger.target_size == 18
        assert trigger.live_count == 90
        assert monitor.state(Collection.ORDERS).in_flight

    def test_triggers_coalesce_while_in_flight(self, monitor):
        _fill(monitor, Collection.ORDERS, 90)
        assert monitor.evaluate(Collection.ORDERS) is not None

        monitor.record_created(Collection.ORDERS)
        with metric_delta("migration_triggers_total", 1, collection="orders", outcome="coalesced"):
            assert monitor.evaluate(Collection.ORDERS) is None

    def test_finish_allows_next_trigger(self, monitor):
        _fill(monitor, Collection.ORDERS, 95)
        assert monitor.evaluate(Collection.ORDERS) is not None
        monitor.finish(Collection.ORDERS)

        trigger = monitor.evaluate(Collection.ORDERS)
        assert trigger is not None
        assert trigger.target_size == 23

    def test_collections_are_independent(self, monitor):
        _fill(monitor, Collection.ORDERS, 90)
        _fill(monitor, Collection.MENU_ITEMS, 90)
        assert monitor.evaluate(Collection.ORDERS) is not None
        assert monitor.evaluate(Collection.MENU_ITEMS) is not None

    def test_try_begin_claims_collection(self, monitor):
        assert monitor.try_begin(Collection.ORDERS)
        assert not monitor.try_begin(Collection.ORDERS)
        monitor.finish(Collection.ORDERS)
        assert monitor.try_begin(Collection.ORDERS)

    def test_removals_never_go_negative(self, monitor):
        _fill(monitor, Collection.ORDERS, 3)
        monitor.record_removed(Collection.ORDERS, count=5)
        assert monitor.state(Collection.ORDERS).live_count == 0

    def test_live_count_gauge(self, monitor):
        _fill(monitor, Collection.USERS, 4)
        assert metric_value("primary_live_records", collection="users") == 4

    def test_reconcile_due_after_configured_creates(self, monitor):
        _fill(monitor, Collection.ORDERS, 4)
        assert not monitor.reconcile_due(Collection.ORDERS)
        monitor.record_created(Collection.ORDERS)
        assert monitor.reconcile_due(Collection.ORDERS)

    @pytest.mark.asyncio
    async def test_reconcile_replaces_local_counter(self, monitor):
        store = MemoryStore()
        for minute in range(3):
            await store.put(Collection.ORDERS, make_record(minute))
        _fill(monitor, Collection.ORDERS, 10)

        assert await monitor.reconcile(Collection.ORDERS, store) == 3
        state = monitor.state(Collection.ORDERS)
        assert state.live_count == 3
        assert state.creates_since_reconcile == 0

    def test_snapshot_is_a_copy(self, monitor):
        _fill(monitor, Collection.ORDERS, 2)
        snapshot = monitor.snapshot()
        monitor.record_created(Collection.ORDERS)
        assert snapshot[Collection.ORDERS].live_count == 2
