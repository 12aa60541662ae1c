"""
Tests for configuration loading and validation.
"""

import pytest
import yaml
from hybridstore.config import CapacityConfig, CollectionPolicy, Config, RouterConfig, load_config
from hybridstore.exceptions import ConfigurationError
from hybridstore.protocols import Collection
from pydantic import ValidationError

from tests.helpers import make_record


@pytest.mark.unit
class TestCollectionPolicy:
    def test_threshold_from_fraction(self):
        assert CollectionPolicy(max_capacity=1000).effective_threshold == 800
        assert CollectionPolicy(max_capacity=10, threshold_fraction=0.55).effective_threshold == 6

    def test_absolute_threshold_wins(self):
        assert CollectionPolicy(max_capacity=100, threshold=90, threshold_fraction=0.5).effective_threshold == 90

    @pytest.mark.parametrize("hysteresis", [1.0, 1.5, 0])
    def test_hysteresis_must_be_below_one(self, hysteresis):
        with pytest.raises(ValidationError):
            CollectionPolicy(hysteresis=hysteresis)

    def test_threshold_cannot_exceed_capacity(self):
        with pytest.raises(ValidationError):
            CollectionPolicy(max_capacity=100, threshold=101)

    def test_eligibility_filter(self):
        assert CollectionPolicy().eligibility_filter() is None

        record_filter = CollectionPolicy(eligible={"status": ["delivered", "cancelled"]}).eligibility_filter()
        assert record_filter.matches(make_record(1, status="cancelled"))
        assert not record_filter.matches(make_record(1, status="pending"))

    def test_per_collection_policy(self):
        capacity = CapacityConfig(collections={Collection.USERS: CollectionPolicy(max_capacity=5)})
        assert capacity.policy_for(Collection.USERS).max_capacity == 5
        assert capacity.policy_for(Collection.ORDERS).max_capacity == 1000


@pytest.mark.unit
class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.operation_timeout_seconds == 5.0
        assert config.retry.attempts == 3
        assert config.migration.max_batch_size == 500
        assert config.primary.backend == "sqlite"
        assert config.archive.backend == "parquet"

    def test_router_page_sizes_are_checked(self):
        with pytest.raises(ValidationError):
            RouterConfig(default_page_size=100, max_page_size=10)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("HYBRIDSTORE_OPERATION_TIMEOUT_SECONDS", "9")
        monkeypatch.setenv("HYBRIDSTORE_RETRY__ATTEMPTS", "7")

        config = Config()

        assert config.operation_timeout_seconds == 9.0
        assert config.retry.attempts == 7

    def test_from_yaml(self, tmp_path):
        config_file = tmp_path / "hybridstore.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "primary": {"backend": "memory", "db_path": str(tmp_path / "db" / "primary.db")},
                    "archive": {"backend": "memory", "base_path": str(tmp_path / "archive")},
                    "capacity": {
                        "default": {"max_capacity": 200, "threshold": 150},
                        "collections": {"users": {"max_capacity": 20}},
                    },
                    "migration": {"journal_path": str(tmp_path / "journal")},
                }
            )
        )

        config = load_config(config_file)

        assert config.primary.backend == "memory"
        assert config.capacity.policy_for(Collection.ORDERS).effective_threshold == 150
        assert config.capacity.policy_for(Collection.USERS).effective_threshold == 16
        # Directories are created on load
        assert (tmp_path / "db").is_dir()
        assert (tmp_path / "archive").is_dir()
        assert (tmp_path / "journal").is_dir()

    def test_empty_yaml_uses_defaults(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_config(config_file).retry.attempts == 3

    def test_invalid_yaml_values_raise_configuration_error(self, tmp_path):
        config_file = tmp_path / "bad.yaml"
        config_file.write_text(yaml.safe_dump({"capacity": {"default": {"hysteresis": 1.2}}}))

        with pytest.raises(ConfigurationError):
            load_config(config_file)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_discovers_config_in_working_directory(self, tmp_path, monkeypatch):
        (tmp_path / "hybridstore.yaml").write_text(yaml.safe_dump({"operation_timeout_seconds": 1.5}))
        monkeypatch.chdir(tmp_path)
        assert load_config().operation_timeout_seconds == 1.5
