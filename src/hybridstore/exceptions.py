"""
Error taxonomy for the hybrid storage tier.
"""

from __future__ import annotations

from typing import Optional

from hybridstore.protocols import BatchStatus, Collection, Tier


class HybridStoreError(Exception):
    """Base exception for all storage tier errors."""

    pass


class NotFound(HybridStoreError):
    """Raised when a record is absent from both tiers."""

    def __init__(self, collection: Collection, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection.value}/{record_id} not found")


class DuplicateRecord(HybridStoreError):
    """Raised when creating a record whose id already exists in the primary."""

    def __init__(self, collection: Collection, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection.value}/{record_id} already exists")


class StoreUnavailable(HybridStoreError):
    """A tier's adapter call failed transiently."""

    def __init__(self, tier: Tier, message: str = "") -> None:
        self.tier = tier
        super().__init__(f"{tier.value} store unavailable" + (f": {message}" if message else ""))


class StoreTimeout(StoreUnavailable):
    """An adapter call exceeded its deadline."""

    def __init__(self, tier: Tier, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(tier, f"timed out after {timeout}s")


class ArchiveDegraded(HybridStoreError):
    """The archive is unreachable while the primary is still serving."""

    def __init__(self, message: str = "archive store unreachable", cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


class MigrationIncomplete(HybridStoreError):
    """Internal signal naming the step at which a migration batch must resume."""

    def __init__(self, batch_id: str, resume_step: BatchStatus, remaining: int = 0) -> None:
        self.batch_id = batch_id
        self.resume_step = resume_step
        self.remaining = remaining
        super().__init__(f"batch {batch_id} incomplete, resume at {resume_step.value} ({remaining} remaining)")


class ConfigurationError(HybridStoreError, ValueError):
    """Raised for invalid storage tier configuration."""

    pass
