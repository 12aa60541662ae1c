"""Configuration models for HybridStore."""

from __future__ import annotations

from .config import (
    ArchiveStoreConfig,
    CapacityConfig,
    CircuitBreakerConfig,
    CollectionPolicy,
    Config,
    MigrationConfig,
    MonitoringConfig,
    PrimaryStoreConfig,
    RetryConfig,
    RouterConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "ArchiveStoreConfig",
    "CapacityConfig",
    "CircuitBreakerConfig",
    "CollectionPolicy",
    "Config",
    "MigrationConfig",
    "MonitoringConfig",
    "PrimaryStoreConfig",
    "RetryConfig",
    "RouterConfig",
    "find_config_file",
    "load_config",
]
