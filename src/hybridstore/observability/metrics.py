"""
Defines Prometheus metrics for the storage tier.
"""

from __future__ import annotations

from typing import Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing this module more than once (test collection, reloads) must not
# raise duplicate registration errors.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race; fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "operations_total": Counter(
            "hybridstore_operations_total",
            "Facade operations by collection and outcome",
            ["operation", "collection", "outcome"],
        ),
        "adapter_calls_total": Counter(
            "hybridstore_adapter_calls_total",
            "Adapter calls by tier and outcome",
            ["tier", "outcome"],
        ),
        "adapter_latency_seconds": Histogram(
            "hybridstore_adapter_latency_seconds",
            "Latency of individual adapter calls",
            ["tier"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
        ),
        "migration_batches_total": Counter(
            "hybridstore_migration_batches_total",
            "Migration batches by final status",
            ["collection", "status"],
        ),
        "records_migrated_total": Counter(
            "hybridstore_records_migrated_total",
            "Records removed from the primary after confirmed archival",
            ["collection"],
        ),
        "primary_live_records": Gauge(
            "hybridstore_primary_live_records",
            "Locally tracked live record count in the primary tier",
            ["collection"],
        ),
        "degraded_reads_total": Counter(
            "hybridstore_degraded_reads_total",
            "Reads served with one tier unreachable",
            ["collection", "tier"],
        ),
        "migration_triggers_total": Counter(
            "hybridstore_migration_triggers_total",
            "Capacity triggers raised, including coalesced ones",
            ["collection", "outcome"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()
