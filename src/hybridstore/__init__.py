"""
HybridStore - Hybrid primary/archive storage tier for restaurant ordering data.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config, load_config
from .exceptions import (
    ArchiveDegraded,
    DuplicateRecord,
    HybridStoreError,
    MigrationIncomplete,
    NotFound,
    StoreTimeout,
    StoreUnavailable,
)
from .facade import HybridStorage
from .protocols import Collection, Record, RecordFilter, ResultPage

__all__ = [
    "__version__",
    "ArchiveDegraded",
    "Collection",
    "Config",
    "DuplicateRecord",
    "HybridStorage",
    "HybridStoreError",
    "MigrationIncomplete",
    "NotFound",
    "Record",
    "RecordFilter",
    "ResultPage",
    "StoreTimeout",
    "StoreUnavailable",
    "load_config",
]
