"""
Capacity monitor: decides when a collection must be migrated.
"""

from __future__ import annotations

from typing import Dict, Optional

import structlog

from hybridstore.config.config import CapacityConfig
from hybridstore.observability import gauge, increment
from hybridstore.protocols import CapacityState, Collection, MigrationTrigger, StoreAdapter

logger = structlog.get_logger(__name__)


class CapacityMonitor:
    """
    Tracks the primary-tier fill level per collection and raises migration triggers.

    The local counter is bumped on every successful create and periodically
    reconciled against the adapter's ``count()``. A trigger fires when the live
    count reaches the threshold and no migration is in flight for that
    collection; triggers raised while one is in flight are coalesced.
    """

    def __init__(self, config: CapacityConfig) -> None:
        self.config = config
        self._states: Dict[Collection, CapacityState] = {}
        for collection in Collection:
            policy = config.policy_for(collection)
            self._states[collection] = CapacityState(
                collection=collection,
                live_count=0,
                threshold=policy.effective_threshold,
                max_capacity=policy.max_capacity,
                hysteresis=policy.hysteresis,
            )

    def state(self, collection: Collection) -> CapacityState:
        return self._states[collection]

    def snapshot(self) -> Dict[Collection, CapacityState]:
        return {c: CapacityState(**vars(s)) for c, s in self._states.items()}

    # --- Counter maintenance ---

    def record_created(self, collection: Collection) -> None:
        state = self._states[collection]
        state.live_count += 1
        state.creates_since_reconcile += 1
        gauge("primary_live_records", state.live_count, labels={"collection": collection.value})

    def record_removed(self, collection: Collection, count: int = 1) -> None:
        state = self._states[collection]
        state.live_count = max(0, state.live_count - count)
        gauge("primary_live_records", state.live_count, labels={"collection": collection.value})

    def reconcile_due(self, collection: Collection) -> bool:
        policy = self.config.policy_for(collection)
        return self._states[collection].creates_since_reconcile >= policy.reconcile_every

    def set_count(self, collection: Collection, live_count: int) -> None:
        state = self._states[collection]
        if state.live_count != live_count:
            logger.debug(
                "Capacity counter corrected",
                collection=collection.value,
                local=state.live_count,
                store=live_count,
            )
        state.live_count = live_count
        state.creates_since_reconcile = 0
        gauge("primary_live_records", live_count, labels={"collection": collection.value})

    async def reconcile(self, collection: Collection, adapter: StoreAdapter) -> int:
        """Replace the local counter with the adapter's count."""
        live_count = await adapter.count(collection)
        self.set_count(collection, live_count)
        return live_count

    # --- Triggers ---

    def target_size(self, collection: Collection) -> int:
        """Records to move so the live count falls back under ``T * hysteresis``."""
        state = self._states[collection]
        return max(1, state.live_count - state.resume_level)

    def evaluate(self, collection: Collection) -> Optional[MigrationTrigger]:
        """Return a trigger and mark the collection in flight, or None."""
        state = self._states[collection]
        if state.live_count < state.threshold:
            return None
        if state.in_flight:
            increment("migration_triggers_total", labels={"collection": collection.value, "outcome": "coalesced"})
            return None

        state.in_flight = True
        trigger = MigrationTrigger(
            collection=collection,
            target_size=self.target_size(collection),
            live_count=state.live_count,
            threshold=state.threshold,
        )
        increment("migration_triggers_total", labels={"collection": collection.value, "outcome": "raised"})
        logger.info(
            "Capacity threshold reached",
            collection=collection.value,
            live_count=state.live_count,
            threshold=state.threshold,
            target_size=trigger.target_size,
        )
        return trigger

    def try_begin(self, collection: Collection) -> bool:
        """Claim the collection for a forced migration; False if one is in flight."""
        state = self._states[collection]
        if state.in_flight:
            return False
        state.in_flight = True
        return True

    def finish(self, collection: Collection) -> None:
        self._states[collection].in_flight = False
