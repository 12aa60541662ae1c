"""
Core contracts and dataclasses for HybridStore.

This module defines the records, filters, pages and migration bookkeeping types
shared by every tier, together with the adapter protocol that any concrete
backing store must satisfy to be plugged into the hybrid storage facade.

Architecture Overview:
- A fast, capacity-bounded primary store holds hot records
- A slow, effectively unbounded archive store holds historical records
- The capacity monitor and migration engine move the oldest records across
- The query router merges both tiers into one logical dataset
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable
from uuid import uuid4

# ============================================================================
# Enums and Constants
# ============================================================================


class Collection(Enum):
    """Record collections managed by the storage tier."""

    ORDERS = "orders"
    MENU_ITEMS = "menu_items"
    USERS = "users"


class Tier(Enum):
    """Backing tiers of the hybrid store."""

    PRIMARY = "primary"
    ARCHIVE = "archive"


class BatchStatus(Enum):
    """Lifecycle of a migration batch."""

    PENDING = "pending"
    WRITTEN_TO_ARCHIVE = "written-to-archive"
    REMOVED_FROM_PRIMARY = "removed-from-primary"
    FAILED = "failed"


PSEUDO_FIELDS = ("record_id", "created_at", "updated_at")

_FIELD_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_SCALARS = (str, int, float, bool, type(None), datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalise a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO-8601 rendering that sorts lexically in time order."""
    return to_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return to_utc(datetime.fromisoformat(value))


def validate_field_path(name: str) -> str:
    if not _FIELD_PATH.match(name):
        raise ValueError(f"Invalid field name: {name!r}")
    return name


# ============================================================================
# Records
# ============================================================================


@dataclass(frozen=True)
class Record:
    """A single stored record: identifier, creation time and a field mapping."""

    record_id: str
    created_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.record_id:
            raise ValueError("record_id must be a non-empty string")
        object.__setattr__(self, "created_at", to_utc(self.created_at))
        if self.updated_at is not None:
            object.__setattr__(self, "updated_at", to_utc(self.updated_at))
        reserved = set(PSEUDO_FIELDS) & set(self.data)
        if reserved:
            raise ValueError(f"Record data may not contain reserved fields: {sorted(reserved)}")

    @classmethod
    def new(
        cls,
        data: Mapping[str, Any],
        *,
        record_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Record:
        """Build a fresh record, generating the identifier and timestamp when absent."""
        payload = dict(data)
        record_id = record_id or payload.pop("record_id", None) or uuid4().hex
        created_at = created_at or payload.pop("created_at", None) or utcnow()
        payload.pop("updated_at", None)
        if isinstance(created_at, str):
            created_at = parse_timestamp(created_at)
        return cls(record_id=str(record_id), created_at=created_at, data=payload)

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.record_id)

    def field_value(self, name: str) -> Any:
        """Resolve a (possibly dotted) field name against the record."""
        if name in PSEUDO_FIELDS:
            return getattr(self, name)
        value: Any = self.data
        for part in name.split("."):
            if not isinstance(value, Mapping) or part not in value:
                return None
            value = value[part]
        return value

    def patched(self, patch: Mapping[str, Any], *, at: Optional[datetime] = None) -> Record:
        """Return a copy with ``patch`` merged into the data and a fresh ``updated_at``."""
        immutable = {"record_id", "created_at"} & set(patch)
        if immutable:
            raise ValueError(f"Cannot patch immutable fields: {sorted(immutable)}")
        data = dict(self.data)
        data.update({k: v for k, v in patch.items() if k != "updated_at"})
        return replace(self, data=data, updated_at=at or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Record:
        updated_at = payload.get("updated_at")
        return cls(
            record_id=payload["record_id"],
            created_at=parse_timestamp(payload["created_at"]),
            data=dict(payload.get("data") or {}),
            updated_at=parse_timestamp(updated_at) if updated_at else None,
        )


# ============================================================================
# Filters and Pages
# ============================================================================


@dataclass(frozen=True)
class FieldRange:
    """Half-open range condition ``gte <= value < lt``; either bound may be omitted."""

    gte: Any = None
    lt: Any = None

    def contains(self, value: Any) -> bool:
        if value is None:
            return False
        try:
            if self.gte is not None and value < self.gte:
                return False
            if self.lt is not None and not value < self.lt:
                return False
        except TypeError:
            return False
        return True


@dataclass(frozen=True)
class RecordFilter:
    """Simple equality / membership / range filter over record fields."""

    equals: Mapping[str, Any] = field(default_factory=dict)
    one_of: Mapping[str, Sequence[Any]] = field(default_factory=dict)
    ranges: Mapping[str, FieldRange] = field(default_factory=dict)
    descending: bool = False

    def __post_init__(self) -> None:
        for name, value in self.equals.items():
            validate_field_path(name)
            if not isinstance(value, _SCALARS):
                raise ValueError(f"Equality filter on {name!r} requires a scalar value")
        for name, values in self.one_of.items():
            validate_field_path(name)
            if not all(isinstance(v, _SCALARS) for v in values):
                raise ValueError(f"Membership filter on {name!r} requires scalar values")
        for name in self.ranges:
            validate_field_path(name)

    @classmethod
    def created_between(
        cls,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        *,
        descending: bool = False,
    ) -> RecordFilter:
        if created_after is None and created_before is None:
            return cls(descending=descending)
        return cls(
            ranges={
                "created_at": FieldRange(
                    gte=to_utc(created_after) if created_after else None,
                    lt=to_utc(created_before) if created_before else None,
                )
            },
            descending=descending,
        )

    @property
    def is_exact_only(self) -> bool:
        return not self.ranges

    def exact_only(self) -> RecordFilter:
        """The subset of this filter an exact-match-only store can evaluate."""
        return RecordFilter(equals=self.equals, one_of=self.one_of, descending=self.descending)

    def merged(self, other: Optional[RecordFilter]) -> RecordFilter:
        if other is None:
            return self
        return RecordFilter(
            equals={**self.equals, **other.equals},
            one_of={**self.one_of, **other.one_of},
            ranges={**self.ranges, **other.ranges},
            descending=other.descending,
        )

    def matches(self, record: Record) -> bool:
        for name, expected in self.equals.items():
            if record.field_value(name) != expected:
                return False
        for name, allowed in self.one_of.items():
            if record.field_value(name) not in allowed:
                return False
        for name, bounds in self.ranges.items():
            if not bounds.contains(record.field_value(name)):
                return False
        return True


@dataclass(frozen=True)
class AdapterCapabilities:
    """What a store adapter can evaluate natively."""

    supports_equality_filters: bool = True
    supports_range_filters: bool = True


@dataclass
class Page:
    """One page of records from a single adapter."""

    records: List[Record] = field(default_factory=list)
    next_token: Optional[str] = None


@dataclass
class ResultPage:
    """A page of merged results served by the query router."""

    records: List[Record] = field(default_factory=list)
    next_token: Optional[str] = None
    degraded: bool = False


# ============================================================================
# Capacity and Migration Bookkeeping
# ============================================================================


@dataclass
class CapacityState:
    """Primary-tier fill level of one collection."""

    collection: Collection
    live_count: int
    threshold: int
    max_capacity: int
    hysteresis: float
    in_flight: bool = False
    creates_since_reconcile: int = 0

    @property
    def fill_ratio(self) -> float:
        return self.live_count / self.max_capacity if self.max_capacity else 0.0

    @property
    def resume_level(self) -> int:
        """Live count below which migration stops."""
        return int(self.threshold * self.hysteresis)


@dataclass(frozen=True)
class MigrationTrigger:
    """Raised by the capacity monitor when a collection crosses its threshold."""

    collection: Collection
    target_size: int
    live_count: int
    threshold: int


@dataclass
class MigrationBatch:
    """Ordered set of record ids moved from primary to archive as one unit."""

    collection: Collection
    record_ids: List[str]
    batch_id: str = field(default_factory=lambda: uuid4().hex)
    status: BatchStatus = BatchStatus.PENDING
    confirmed_ids: List[str] = field(default_factory=list)
    versions: Dict[str, Optional[str]] = field(default_factory=dict)
    deleted_ids: List[str] = field(default_factory=list)
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None

    @property
    def unconfirmed_ids(self) -> List[str]:
        confirmed = set(self.confirmed_ids)
        return [rid for rid in self.record_ids if rid not in confirmed]

    def transition(self, status: BatchStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.updated_at = utcnow()
        if error is not None:
            self.last_error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "collection": self.collection.value,
            "record_ids": list(self.record_ids),
            "status": self.status.value,
            "confirmed_ids": list(self.confirmed_ids),
            "versions": dict(self.versions),
            "deleted_ids": list(self.deleted_ids),
            "attempts": self.attempts,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationBatch:
        return cls(
            batch_id=data["batch_id"],
            collection=Collection(data["collection"]),
            record_ids=list(data["record_ids"]),
            status=BatchStatus(data["status"]),
            confirmed_ids=list(data.get("confirmed_ids", [])),
            versions=dict(data.get("versions", {})),
            deleted_ids=list(data.get("deleted_ids", [])),
            attempts=data.get("attempts", 0),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            last_error=data.get("last_error"),
        )


@dataclass
class MigrationReport:
    """Outcome of one migration batch."""

    batch_id: str
    collection: Collection
    status: BatchStatus
    selected: int = 0
    archived: int = 0
    removed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    resumed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == BatchStatus.REMOVED_FROM_PRIMARY


# ============================================================================
# Adapter Protocols
# ============================================================================


class StoreAdapter(Protocol):
    """CRUD contract every primary or archive backing store satisfies."""

    capabilities: AdapterCapabilities

    async def initialize(self) -> None:
        """Open connections / create on-disk structures."""
        ...

    async def close(self) -> None:
        """Release all resources."""
        ...

    async def put(self, collection: Collection, record: Record) -> None:
        """Upsert by record id. Idempotent."""
        ...

    async def get(self, collection: Collection, record_id: str) -> Optional[Record]:
        """Return the record, or None when absent."""
        ...

    async def list(
        self,
        collection: Collection,
        record_filter: Optional[RecordFilter] = None,
        page_token: Optional[str] = None,
        limit: int = 100,
    ) -> Page:
        """Return one page ordered by (created_at, record_id)."""
        ...

    async def delete(self, collection: Collection, record_id: str) -> bool:
        """Remove the record. Returns False when it was already absent."""
        ...

    async def count(self, collection: Collection) -> int:
        """Approximate live record count."""
        ...


@runtime_checkable
class SupportsAppend(Protocol):
    """Stores that can write a batch of records in one append."""

    async def append(self, collection: Collection, records: Sequence[Record]) -> None:
        ...
