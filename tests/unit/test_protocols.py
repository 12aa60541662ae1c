"""Tests for records, filters and migration bookkeeping types."""

from datetime import datetime, timedelta, timezone

import pytest
from hybridstore.protocols import (
    BatchStatus,
    CapacityState,
    Collection,
    FieldRange,
    MigrationBatch,
    Record,
    RecordFilter,
)

from tests.helpers import make_record


@pytest.mark.unit
class TestRecord:
    def test_new_generates_id_and_timestamp(self):
        record = Record.new({"status": "pending"})
        assert record.record_id
        assert record.created_at.tzinfo is not None
        assert record.updated_at is None
        assert record.data == {"status": "pending"}

    def test_new_accepts_id_and_created_at_in_payload(self):
        record = Record.new({"record_id": "order-1", "created_at": "2024-01-01T00:00:00+00:00", "total": 12})
        assert record.record_id == "order-1"
        assert record.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert record.data == {"total": 12}

    def test_naive_datetimes_are_treated_as_utc(self):
        record = Record(record_id="a", created_at=datetime(2024, 1, 1, 8, 30))
        assert record.created_at == datetime(2024, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_reserved_fields_rejected_in_data(self):
        with pytest.raises(ValueError):
            Record(record_id="a", created_at=datetime.now(timezone.utc), data={"record_id": "b"})

    def test_empty_id_rejected(self):
        with pytest.raises(ValueError):
            Record(record_id="", created_at=datetime.now(timezone.utc))

    def test_patched_merges_and_stamps_update(self):
        record = make_record(1, status="pending", items=2)
        patched = record.patched({"status": "delivered"})

        assert patched.data == {"status": "delivered", "items": 2}
        assert patched.updated_at is not None
        assert patched.created_at == record.created_at
        # The original is unchanged
        assert record.data["status"] == "pending"

    @pytest.mark.parametrize("field", ["record_id", "created_at"])
    def test_patched_rejects_immutable_fields(self, field):
        with pytest.raises(ValueError):
            make_record(1).patched({field: "x"})

    def test_field_value_resolves_dotted_paths_and_pseudo_fields(self):
        record = make_record(3, customer={"name": "Ada", "address": {"city": "Lagos"}})
        assert record.field_value("customer.address.city") == "Lagos"
        assert record.field_value("customer.phone") is None
        assert record.field_value("record_id") == "r0003"
        assert record.field_value("created_at") == record.created_at

    def test_dict_round_trip_keeps_update_stamp(self):
        record = make_record(5, status="ready").patched({"status": "delivered"})
        assert Record.from_dict(record.to_dict()) == record


@pytest.mark.unit
class TestRecordFilter:
    def test_equality_and_membership(self):
        record = make_record(1, status="delivered", table=4)
        assert RecordFilter(equals={"status": "delivered"}).matches(record)
        assert not RecordFilter(equals={"status": "pending"}).matches(record)
        assert RecordFilter(one_of={"status": ("delivered", "cancelled")}).matches(record)
        assert not RecordFilter(one_of={"table": (1, 2)}).matches(record)

    def test_range_is_half_open(self):
        bounds = FieldRange(gte=10, lt=20)
        assert bounds.contains(10)
        assert bounds.contains(19)
        assert not bounds.contains(20)
        assert not bounds.contains(None)
        assert not bounds.contains("not comparable")

    def test_created_between(self):
        start = make_record(10).created_at
        record_filter = RecordFilter.created_between(start, start + timedelta(minutes=5))
        assert record_filter.matches(make_record(10))
        assert record_filter.matches(make_record(14))
        assert not record_filter.matches(make_record(15))
        assert not record_filter.is_exact_only

    def test_exact_only_drops_ranges(self):
        record_filter = RecordFilter(
            equals={"status": "delivered"}, ranges={"total": FieldRange(gte=5)}, descending=True
        )
        exact = record_filter.exact_only()
        assert exact.is_exact_only
        assert exact.equals == {"status": "delivered"}
        assert exact.descending

    def test_merged_combines_conditions(self):
        merged = RecordFilter(one_of={"status": ("delivered",)}).merged(RecordFilter(equals={"table": 3}))
        assert merged.matches(make_record(1, status="delivered", table=3))
        assert not merged.matches(make_record(1, status="pending", table=3))

    def test_invalid_field_names_rejected(self):
        with pytest.raises(ValueError):
            RecordFilter(equals={"status'); DROP TABLE records; --": 1})

    def test_non_scalar_values_rejected(self):
        with pytest.raises(ValueError):
            RecordFilter(equals={"items": ["a", "b"]})


@pytest.mark.unit
class TestBookkeeping:
    def test_capacity_state_resume_level(self):
        state = CapacityState(Collection.ORDERS, live_count=90, threshold=90, max_capacity=100, hysteresis=0.8)
        assert state.resume_level == 72
        assert state.fill_ratio == pytest.approx(0.9)

    def test_batch_round_trip(self):
        batch = MigrationBatch(collection=Collection.ORDERS, record_ids=["a", "b", "c"])
        batch.confirmed_ids.append("a")
        batch.versions["a"] = None
        batch.deleted_ids.append("c")
        batch.transition(BatchStatus.WRITTEN_TO_ARCHIVE, "boom")

        restored = MigrationBatch.from_dict(batch.to_dict())
        assert restored.batch_id == batch.batch_id
        assert restored.status == BatchStatus.WRITTEN_TO_ARCHIVE
        assert restored.unconfirmed_ids == ["b", "c"]
        assert restored.versions == {"a": None}
        assert restored.deleted_ids == ["c"]
        assert restored.last_error == "boom"
