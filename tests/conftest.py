"""
Shared test configuration for HybridStore.

Provides configuration, fault-injecting adapters and a ready facade with
proper isolation between tests.
"""

# Standard library imports
import asyncio
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from hybridstore.config import (
    ArchiveStoreConfig,
    CapacityConfig,
    CircuitBreakerConfig,
    CollectionPolicy,
    Config,
    MigrationConfig,
    PrimaryStoreConfig,
    RetryConfig,
    RouterConfig,
)
from hybridstore.facade import HybridStorage
from hybridstore.storage import MemoryStore
from hybridstore.tiering import CircuitBreaker, RetryPolicy

from tests.helpers import FaultyStore

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any background task a test leaves behind."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def retry_config():
    """Two attempts and no backoff sleeps."""
    return RetryConfig(attempts=2, initial_backoff_seconds=0, max_backoff_seconds=0)


@pytest.fixture
def test_config(tmp_path, retry_config):
    """Provide test configuration with memory backends and M=100, T=90."""
    return Config(
        operation_timeout_seconds=2.0,
        primary=PrimaryStoreConfig(backend="memory", db_path=tmp_path / "primary.db"),
        archive=ArchiveStoreConfig(backend="memory", base_path=tmp_path / "archive"),
        capacity=CapacityConfig(default=CollectionPolicy(max_capacity=100, threshold=90, hysteresis=0.8)),
        retry=retry_config,
        migration=MigrationConfig(archive_write_attempts=2, journal_path=tmp_path / "journal"),
        router=RouterConfig(default_page_size=50),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=50, recovery_timeout_seconds=0),
    )


@pytest.fixture
def disk_config(tmp_path, retry_config):
    """Configuration with the SQLite primary and the Parquet archive under tmp_path."""
    return Config(
        operation_timeout_seconds=5.0,
        primary=PrimaryStoreConfig(backend="sqlite", db_path=tmp_path / "primary.db", pool_size=2),
        archive=ArchiveStoreConfig(backend="parquet", base_path=tmp_path / "archive"),
        capacity=CapacityConfig(default=CollectionPolicy(max_capacity=20, threshold=10, hysteresis=0.5)),
        retry=retry_config,
        migration=MigrationConfig(archive_write_attempts=2, journal_path=tmp_path / "journal"),
    )


# ============================================================================
# Adapter Fixtures
# ============================================================================


@pytest.fixture
def primary():
    return FaultyStore(MemoryStore("primary"))


@pytest.fixture
def archive():
    return FaultyStore(MemoryStore("archive"))


@pytest.fixture
def retry_policy(retry_config):
    return RetryPolicy(retry_config, timeout=2.0)


@pytest.fixture
def breaker(test_config):
    return CircuitBreaker("archive", test_config.circuit_breaker)


@pytest.fixture
async def storage(primary, archive, test_config) -> AsyncGenerator[HybridStorage, None]:
    """Initialized facade over fault-injecting memory adapters."""
    hybrid = HybridStorage(primary, archive, test_config)
    await hybrid.initialize()
    yield hybrid
    for gate in list(primary.gates.values()) + list(archive.gates.values()):
        gate.set()
    await hybrid.close()
