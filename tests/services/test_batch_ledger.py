"""Tests for BatchLedger: receipts, merges, decrements and adjustments."""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.domain.dtos import BatchOrder, BatchStatus
from costing_kernel.exceptions import (
    BatchNotFoundError,
    InvalidQuantityError,
    InvariantViolationError,
    NotFoundError,
)
from costing_kernel.models.inventory_batch import InventoryBatchModel


def _upsert(ledger, batch_number, qty, cost="10", product_id="SKU-1", warehouse_id="WH-1", **kwargs):
    return ledger.upsert_batch(
        product_id, warehouse_id, batch_number, Decimal(str(qty)), Decimal(str(cost)), **kwargs,
    )


class TestUpsertBatch:

    def test_new_identity_inserts_active_batch(self, batch_ledger, deterministic_clock):
        batch = _upsert(batch_ledger, "B1", 5, "12.50")

        assert batch.quantity == Decimal("5")
        assert batch.unit_cost == Decimal("12.50")
        assert batch.status == BatchStatus.ACTIVE.value
        assert batch.created_at == deterministic_clock.now()

    def test_existing_identity_merges_and_keeps_unit_cost(self, batch_ledger, session):
        first = _upsert(batch_ledger, "B1", 5, "10")
        merged = _upsert(batch_ledger, "B1", 3, "99")

        assert merged.id == first.id
        assert merged.quantity == Decimal("8")
        assert merged.unit_cost == Decimal("10")
        count = session.query(InventoryBatchModel).filter_by(batch_number="B1").count()
        assert count == 1

    def test_same_number_in_other_warehouse_is_a_new_batch(self, batch_ledger):
        a = _upsert(batch_ledger, "B1", 5, warehouse_id="WH-1")
        b = _upsert(batch_ledger, "B1", 5, warehouse_id="WH-2")
        assert a.id != b.id

    def test_depleted_batch_reactivated_by_receipt(self, batch_ledger, captured_logs):
        batch = _upsert(batch_ledger, "B1", 2)
        batch_ledger.decrement_batch(batch.id, Decimal("2"))
        assert batch.status == BatchStatus.DEPLETED.value

        revived = _upsert(batch_ledger, "B1", 4)

        assert revived.id == batch.id
        assert revived.quantity == Decimal("4")
        assert revived.status == BatchStatus.ACTIVE.value
        assert any(r["message"] == "batch_reactivated" for r in captured_logs())

    def test_synthesized_batch_number(self, batch_ledger):
        first = _upsert(batch_ledger, None, 1)
        second = _upsert(batch_ledger, None, 1)

        pattern = re.compile(r"^BATCH-20240101-[0-9a-f]{12}$")
        assert pattern.match(first.batch_number)
        assert pattern.match(second.batch_number)
        assert first.batch_number != second.batch_number

    def test_synthesized_number_collision_is_regenerated(self, batch_ledger, monkeypatch):
        taken = _upsert(batch_ledger, None, 1).batch_number
        numbers = iter([taken, "BATCH-20240101-000000000fresh"])
        monkeypatch.setattr(batch_ledger, "synthesize_batch_number", lambda: next(numbers))

        batch = _upsert(batch_ledger, None, 2)

        assert batch.batch_number == "BATCH-20240101-000000000fresh"
        assert batch.quantity == Decimal("2")

    def test_metadata_maps_descriptive_fields(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5, metadata={
            "expiry_date": date(2024, 6, 30),
            "supplier_batch_ref": "SUP-77",
            "grade": "A",
        })

        assert batch.expiry_date == date(2024, 6, 30)
        assert batch.supplier_batch_ref == "SUP-77"
        assert batch.batch_metadata == {"grade": "A"}

    def test_acquired_at_overrides_clock(self, batch_ledger):
        acquired = datetime(2023, 12, 1, 8, 0, tzinfo=timezone.utc)
        batch = _upsert(batch_ledger, "B1", 5, acquired_at=acquired)
        assert batch.created_at == acquired

    @pytest.mark.parametrize("qty,cost", [(0, 10), (-1, 10), (5, -1)])
    def test_invalid_arguments(self, batch_ledger, qty, cost):
        with pytest.raises(InvalidQuantityError):
            _upsert(batch_ledger, "B1", qty, cost)

    def test_float_rejected(self, batch_ledger):
        with pytest.raises(TypeError):
            batch_ledger.upsert_batch("SKU-1", "WH-1", "B1", 1.5, Decimal("1"))


class TestFindActiveBatches:

    def test_ordering_and_filtering(self, batch_ledger, deterministic_clock):
        b1 = _upsert(batch_ledger, "B1", 5)
        deterministic_clock.advance(60)
        b2 = _upsert(batch_ledger, "B2", 5)
        deterministic_clock.advance(60)
        b3 = _upsert(batch_ledger, "B3", 5)
        _upsert(batch_ledger, "OTHER", 5, product_id="SKU-2")
        batch_ledger.decrement_batch(b2.id, Decimal("5"))

        oldest = list(batch_ledger.find_active_batches("SKU-1", "WH-1", BatchOrder.OLDEST_FIRST))
        newest = list(batch_ledger.find_active_batches("SKU-1", "WH-1", BatchOrder.NEWEST_FIRST))

        assert [s.batch_id for s in oldest] == [b1.id, b3.id]
        assert [s.batch_id for s in newest] == [b3.id, b1.id]
        assert all(s.is_available for s in oldest)

    def test_same_timestamp_tie_broken_by_batch_number(self, batch_ledger):
        _upsert(batch_ledger, "B-2", 1)
        _upsert(batch_ledger, "B-1", 1)

        numbers = [s.batch_number for s in batch_ledger.find_active_batches("SKU-1", "WH-1")]
        assert numbers == ["B-1", "B-2"]

    def test_snapshot_is_detached_value(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5, "4")
        batches = batch_ledger.find_active_batches("SKU-1", "WH-1")
        snapshot = next(batches)
        batches.close()

        batch_ledger.decrement_batch(batch.id, Decimal("1"))

        assert snapshot.quantity == Decimal("5")
        assert snapshot.value == Decimal("20")


class TestDecrementBatch:

    def test_decrement_reduces_quantity(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        updated = batch_ledger.decrement_batch(batch.id, Decimal("2"))

        assert updated.quantity == Decimal("3")
        assert updated.status == BatchStatus.ACTIVE.value

    def test_decrement_to_zero_depletes(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        updated = batch_ledger.decrement_batch(batch.id, Decimal("5"))

        assert updated.quantity == 0
        assert updated.status == BatchStatus.DEPLETED.value
        assert list(batch_ledger.find_active_batches("SKU-1", "WH-1")) == []

    def test_overshoot_within_tolerance_clamps_to_zero(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        updated = batch_ledger.decrement_batch(batch.id, Decimal("5.000000001"))

        assert updated.quantity == 0
        assert updated.status == BatchStatus.DEPLETED.value

    def test_overshoot_beyond_tolerance_raises(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)

        with pytest.raises(InvariantViolationError) as exc_info:
            batch_ledger.decrement_batch(batch.id, Decimal("5.1"))

        assert exc_info.value.available_quantity == "5"
        assert batch_ledger.get_batch(batch.id).quantity == Decimal("5")

    def test_missing_batch(self, batch_ledger):
        with pytest.raises(BatchNotFoundError) as exc_info:
            batch_ledger.decrement_batch(uuid4(), Decimal("1"))
        assert isinstance(exc_info.value, NotFoundError)

    @pytest.mark.parametrize("qty", ["0", "-3"])
    def test_non_positive_decrement_rejected(self, batch_ledger, qty):
        batch = _upsert(batch_ledger, "B1", 5)
        with pytest.raises(InvalidQuantityError):
            batch_ledger.decrement_batch(batch.id, Decimal(qty))

    def test_decrement_logged_with_string_decimals(self, batch_ledger, captured_logs):
        batch = _upsert(batch_ledger, "B1", 5)
        batch_ledger.decrement_batch(batch.id, Decimal("1.5"))

        record = next(r for r in captured_logs() if r["message"] == "batch_decremented")
        assert record["quantity_taken"] == "1.5"
        assert record["remaining"] == "3.5"


class TestAdjustBatch:

    def test_adjust_down_to_zero_depletes(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        updated, delta = batch_ledger.adjust_batch(batch.id, Decimal("0"))

        assert delta == Decimal("-5")
        assert updated.status == BatchStatus.DEPLETED.value

    def test_adjust_up_reactivates(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        batch_ledger.decrement_batch(batch.id, Decimal("5"))
        updated, delta = batch_ledger.adjust_batch(batch.id, Decimal("2"))

        assert delta == Decimal("2")
        assert updated.status == BatchStatus.ACTIVE.value

    def test_negative_target_rejected(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        with pytest.raises(InvalidQuantityError):
            batch_ledger.adjust_batch(batch.id, Decimal("-1"))


class TestLookups:

    def test_get_batch_by_identity(self, batch_ledger):
        batch = _upsert(batch_ledger, "B1", 5)
        assert batch_ledger.get_batch_by_identity("SKU-1", "WH-1", "B1").id == batch.id
        assert batch_ledger.get_batch_by_identity("SKU-1", "WH-1", "B9") is None

    def test_lock_batch_missing(self, batch_ledger):
        with pytest.raises(BatchNotFoundError):
            batch_ledger.lock_batch(uuid4())
