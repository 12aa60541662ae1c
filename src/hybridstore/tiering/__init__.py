"""Capacity tracking, migration and merged reads across the two tiers."""

from __future__ import annotations

from .capacity import CapacityMonitor
from .circuit_breaker import CircuitBreaker, CircuitBreakerState
from .journal import BatchJournal
from .migration import MigrationEngine
from .retry import RetryPolicy
from .router import MergedCursor, QueryRouter

__all__ = [
    "BatchJournal",
    "CapacityMonitor",
    "CircuitBreaker",
    "CircuitBreakerState",
    "MergedCursor",
    "MigrationEngine",
    "QueryRouter",
    "RetryPolicy",
]
