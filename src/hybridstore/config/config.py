"""
Configuration management for HybridStore using Pydantic.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hybridstore.exceptions import ConfigurationError
from hybridstore.protocols import Collection, RecordFilter

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=30.0, ge=0)
    half_open_max_calls: int = Field(default=1, ge=1)


class RetryConfig(BaseModel):
    """Bounded exponential backoff applied to transient adapter failures."""

    attempts: int = Field(default=3, ge=1, description="Total attempts per adapter call, including the first.")
    initial_backoff_seconds: float = Field(default=0.1, ge=0, description="Multiplier of the exponential backoff.")
    max_backoff_seconds: float = Field(default=2.0, ge=0, description="Upper bound of a single backoff sleep.")


class PrimaryStoreConfig(BaseModel):
    """Configuration for the SQLite primary tier."""

    backend: Literal["sqlite", "memory"] = Field(default="sqlite", description="Primary store implementation.")
    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".hybridstore" / "primary.db",
        description="SQLite database file path",
    )
    pool_size: int = Field(default=5, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class ArchiveStoreConfig(BaseModel):
    """Configuration for the Parquet archive tier."""

    backend: Literal["parquet", "memory"] = Field(default="parquet", description="Archive store implementation.")
    base_path: Path = Field(
        default_factory=lambda: Path.home() / ".hybridstore" / "archive",
        description="Base directory for archive segment files",
    )
    compression: Literal["snappy", "gzip", "brotli", "zstd", "none"] = Field(
        default="snappy", description="Compression codec for archive segments."
    )
    segment_cache_size: int = Field(
        default=64, ge=0, description="Decoded segments kept in memory between scans. 0 disables the cache."
    )

    @field_validator("base_path", mode="before")
    @classmethod
    def ensure_archive_directory(cls, v: Any) -> Path:
        """Ensure archive directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.mkdir(parents=True, exist_ok=True)
        return path


class CollectionPolicy(BaseModel):
    """Capacity policy of one collection in the primary tier."""

    max_capacity: int = Field(default=1000, gt=0, description="Configured maximum capacity M of the primary tier.")
    threshold: Optional[int] = Field(
        default=None, gt=0, description="Absolute trigger level T. Overrides threshold_fraction when set."
    )
    threshold_fraction: float = Field(default=0.8, gt=0, le=1, description="T as a fraction of max_capacity.")
    hysteresis: float = Field(
        default=0.8, gt=0, lt=1, description="Migration drains the collection down to T * hysteresis."
    )
    eligible: Dict[str, List[Any]] = Field(
        default_factory=dict,
        description="Only records whose field value is in the listed values may be migrated.",
    )
    reconcile_every: int = Field(default=50, ge=1, description="Reconcile the local counter every N creates.")

    @model_validator(mode="after")
    def check_threshold(self) -> CollectionPolicy:
        if self.threshold is not None and self.threshold > self.max_capacity:
            raise ValueError("threshold cannot exceed max_capacity")
        return self

    @property
    def effective_threshold(self) -> int:
        if self.threshold is not None:
            return self.threshold
        return max(1, math.ceil(self.max_capacity * self.threshold_fraction))

    def eligibility_filter(self) -> Optional[RecordFilter]:
        if not self.eligible:
            return None
        return RecordFilter(one_of={name: tuple(values) for name, values in self.eligible.items()})


class CapacityConfig(BaseModel):
    """Per-collection capacity policies with a shared default."""

    default: CollectionPolicy = Field(default_factory=CollectionPolicy)
    collections: Dict[Collection, CollectionPolicy] = Field(
        default_factory=dict, description="Collection-specific overrides of the default policy."
    )

    def policy_for(self, collection: Collection) -> CollectionPolicy:
        return self.collections.get(collection, self.default)


class MigrationConfig(BaseModel):
    """Configuration for the primary-to-archive migration engine."""

    archive_write_attempts: int = Field(default=3, ge=1, description="Rounds of archive writes for a batch subset.")
    max_batch_size: int = Field(default=500, ge=1, description="Largest number of records moved in one batch.")
    select_page_size: int = Field(default=200, ge=1, description="Page size used while selecting oldest records.")
    journal_path: Optional[Path] = Field(
        default_factory=lambda: Path.home() / ".hybridstore" / "journal",
        description="Directory for in-progress batch state. None keeps the journal in memory.",
    )

    @field_validator("journal_path", mode="before")
    @classmethod
    def ensure_journal_directory(cls, v: Any) -> Optional[Path]:
        if v is None:
            return None
        path = Path(v) if not isinstance(v, Path) else v
        path.mkdir(parents=True, exist_ok=True)
        return path


class RouterConfig(BaseModel):
    """Configuration for merged reads across tiers."""

    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=500, ge=1)
    archive_scan_limit: int = Field(
        default=5000, ge=1, description="Archive rows examined per list call before yielding a continuation token."
    )

    @model_validator(mode="after")
    def check_page_sizes(self) -> RouterConfig:
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    metrics_enabled: bool = Field(default=True, description="Record Prometheus metrics.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "HybridStore"
    version: str = "0.1.0"
    operation_timeout_seconds: float = Field(default=5.0, gt=0, description="Deadline of a single adapter call.")
    primary: PrimaryStoreConfig = Field(default_factory=PrimaryStoreConfig)
    archive: ArchiveStoreConfig = Field(default_factory=ArchiveStoreConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="HYBRIDSTORE_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "hybridstore.yaml",
        current_dir / "hybridstore.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from ``path``, a discovered file, or defaults and the environment."""
    config_path = path or find_config_file()
    try:
        if config_path:
            log.info("Loading configuration from: %s", config_path)
            return Config.from_yaml(config_path)
        log.info("No config file found. Using default settings.")
        return Config()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
