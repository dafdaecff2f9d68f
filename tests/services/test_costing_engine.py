"""Tests for CostingEngine: two-phase valuate/commit, receipts and adjustments."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from costing_engines.valuation import BatchAllocation, CostAllocationResult, CostMethod
from costing_kernel.domain.dtos import BatchStatus, MovementDirection
from costing_kernel.exceptions import (
    BatchNotFoundError,
    InvariantViolationError,
    StaleAllocationError,
)
from costing_kernel.models.stock_movement import StockMovementModel

LOTS = [("B1", 5, 10), ("B2", 10, 20)]


def _movements(session, direction=None):
    stmt = select(StockMovementModel).order_by(StockMovementModel.created_at)
    if direction is not None:
        stmt = stmt.where(StockMovementModel.direction == direction.value)
    return session.scalars(stmt).all()


class TestValuate:

    def test_fifo_quote(self, costing_engine, receive_batches, make_product):
        receive_batches(LOTS)

        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("7"))

        assert [(a.batch_number, a.quantity_taken) for a in quote.batches_used] == [
            ("B1", Decimal("5")),
            ("B2", Decimal("2")),
        ]
        assert quote.total_cost == Decimal("90")
        assert quote.unit_cost == Decimal("12.857143")

    def test_lifo_quote(self, costing_engine, receive_batches, make_product):
        receive_batches(LOTS)

        quote = costing_engine.valuate(make_product("lifo"), "WH-1", Decimal("7"))

        assert [a.batch_number for a in quote.batches_used] == ["B2"]
        assert quote.total_cost == Decimal("140")

    def test_weighted_average_quote(self, costing_engine, receive_batches, make_product):
        receive_batches([("B1", 5, 10), ("B2", 5, 20)])

        quote = costing_engine.valuate(make_product("weighted_average"), "WH-1", Decimal("3"))

        assert quote.unit_cost == Decimal("15")
        assert quote.total_cost == Decimal("45")

    def test_standard_quote(self, costing_engine, make_product):
        quote = costing_engine.valuate(make_product("standard", "7.5"), "WH-1", Decimal("4"))
        assert quote.total_cost == Decimal("30")

    def test_valuate_mutates_nothing(self, costing_engine, receive_batches, make_product, session):
        batches = receive_batches(LOTS)

        costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("12"))

        for batch in batches:
            session.refresh(batch)
        assert [b.quantity for b in batches] == [Decimal("5"), Decimal("10")]
        assert _movements(session, MovementDirection.OUT) == []

    def test_other_warehouse_not_valued(self, costing_engine, receive_batches, make_product):
        receive_batches(LOTS, warehouse_id="WH-2")

        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("3"))

        assert quote.batches_used == ()
        assert quote.shortfall == Decimal("3")

    def test_configured_unit_cost_places(self, session, deterministic_clock, receive_batches, make_product):
        from costing_config import CostingConfig
        from costing_services.costing_engine import CostingEngine

        receive_batches(LOTS)
        engine = CostingEngine(session, deterministic_clock, CostingConfig(unit_cost_decimal_places=2))

        quote = engine.valuate(make_product("fifo"), "WH-1", Decimal("7"))

        assert quote.unit_cost == Decimal("12.86")

    def test_valuation_logged_with_context(self, costing_engine, receive_batches, make_product, captured_logs):
        receive_batches(LOTS)
        costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("7"))

        record = next(r for r in captured_logs() if r["message"] == "valuation_completed")
        assert record["product_id"] == "SKU-1"
        assert record["warehouse_id"] == "WH-1"
        assert record["total_cost"] == "90"
        assert record["cost_method"] == "fifo"


class TestCommit:

    def test_commit_decrements_quoted_batches(self, costing_engine, receive_batches, make_product):
        b1, b2 = receive_batches(LOTS)
        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("7"))

        updated = costing_engine.commit(quote)

        assert [b.id for b in updated] == [b1.id, b2.id]
        assert b1.quantity == 0
        assert b1.status == BatchStatus.DEPLETED.value
        assert b2.quantity == Decimal("8")

    def test_pool_methods_commit_nothing(self, costing_engine, receive_batches, make_product):
        receive_batches(LOTS)
        quote = costing_engine.valuate(make_product("weighted_average"), "WH-1", Decimal("3"))

        assert costing_engine.commit(quote) == []

    def test_stale_quote_rolls_back_every_decrement(self, costing_engine, receive_batches, make_product):
        b1, b2 = receive_batches(LOTS)
        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("7"))
        # Another consumer drains B2 between quote and commit
        costing_engine.ledger.decrement_batch(b2.id, Decimal("9"))

        with pytest.raises(StaleAllocationError) as exc_info:
            costing_engine.commit(quote)

        assert exc_info.value.batch_id == str(b2.id)
        assert exc_info.value.requested_quantity == "2"
        assert exc_info.value.available_quantity == "1"
        # B1 was decremented first and must have been rolled back
        assert costing_engine.ledger.get_batch(b1.id).quantity == Decimal("5")
        assert costing_engine.ledger.get_batch(b2.id).quantity == Decimal("1")

    def test_replayed_commit_is_rejected(self, costing_engine, receive_batches, make_product):
        receive_batches([("B1", 5, 10)])
        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("5"))
        costing_engine.commit(quote)

        with pytest.raises(InvariantViolationError):
            costing_engine.commit(quote)

    def test_commit_of_vanished_batch(self, costing_engine):
        quote = CostAllocationResult(
            product_id="SKU-1",
            warehouse_id="WH-1",
            cost_method=CostMethod.FIFO,
            requested_quantity=Decimal("1"),
            unit_cost=Decimal("1"),
            total_cost=Decimal("1"),
            batches_used=(BatchAllocation(uuid4(), "GONE", Decimal("1"), Decimal("1"), Decimal("1")),),
            allocated_quantity=Decimal("1"),
        )

        with pytest.raises(BatchNotFoundError):
            costing_engine.commit(quote)

    def test_stale_rejection_logged(self, costing_engine, receive_batches, make_product, captured_logs):
        (b1,) = receive_batches([("B1", 5, 10)])
        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("5"))
        costing_engine.ledger.decrement_batch(b1.id, Decimal("1"))

        with pytest.raises(StaleAllocationError):
            costing_engine.commit(quote)

        record = next(r for r in captured_logs() if r["message"] == "commit_rejected_stale")
        assert record["quoted_quantity"] == "5"
        assert record["locked_quantity"] == "4"


class TestReceive:

    def test_receive_writes_inbound_movement(self, costing_engine, session):
        batch = costing_engine.receive(
            "SKU-1", "WH-1", Decimal("4"), Decimal("2.50"),
            batch_number="B1", reference_type="purchase", reference_id="PO-1",
        )

        (movement,) = _movements(session, MovementDirection.IN)
        assert movement.batch_id == batch.id
        assert movement.quantity == Decimal("4")
        assert movement.total_cost == Decimal("10")
        assert movement.reference_id == "PO-1"

    def test_replayed_purchase_reference_is_skipped(self, costing_engine, session, captured_logs):
        first = costing_engine.receive(
            "SKU-1", "WH-1", Decimal("4"), Decimal("2.50"),
            batch_number="B1", reference_type="purchase", reference_id="PO-1",
        )
        again = costing_engine.receive(
            "SKU-1", "WH-1", Decimal("4"), Decimal("2.50"),
            batch_number="B1", reference_type="purchase", reference_id="PO-1",
        )

        assert again.id == first.id
        assert again.quantity == Decimal("4")
        assert len(_movements(session, MovementDirection.IN)) == 1
        assert any(r["message"] == "receipt_duplicate_skipped" for r in captured_logs())

    def test_same_purchase_other_product_is_received(self, costing_engine, session):
        costing_engine.receive(
            "SKU-1", "WH-1", Decimal("4"), Decimal("2"),
            batch_number="B1", reference_type="purchase", reference_id="PO-1",
        )
        costing_engine.receive(
            "SKU-2", "WH-1", Decimal("3"), Decimal("5"),
            batch_number="B1", reference_type="purchase", reference_id="PO-1",
        )

        assert len(_movements(session, MovementDirection.IN)) == 2

    def test_unreferenced_receipts_always_apply(self, costing_engine, session):
        costing_engine.receive("SKU-1", "WH-1", Decimal("4"), Decimal("2"), batch_number="B1")
        batch = costing_engine.receive("SKU-1", "WH-1", Decimal("4"), Decimal("2"), batch_number="B1")

        assert batch.quantity == Decimal("8")
        assert len(_movements(session, MovementDirection.IN)) == 2

    def test_merge_movement_valued_at_batch_cost(self, costing_engine, session):
        costing_engine.receive("SKU-1", "WH-1", Decimal("4"), Decimal("2"), batch_number="B1")
        costing_engine.receive("SKU-1", "WH-1", Decimal("1"), Decimal("9"), batch_number="B1")

        (second,) = [m for m in _movements(session, MovementDirection.IN) if m.quantity == 1]
        assert second.unit_cost == Decimal("2")
        assert second.total_cost == Decimal("2")

    def test_configured_batch_prefix(self, session, deterministic_clock):
        from costing_config import CostingConfig
        from costing_services.costing_engine import CostingEngine

        engine = CostingEngine(session, deterministic_clock, CostingConfig(batch_number_prefix="LOT"))
        batch = engine.receive("SKU-1", "WH-1", Decimal("1"), Decimal("1"))

        assert batch.batch_number.startswith("LOT-20240101-")


class TestAdjust:

    def test_adjust_writes_signed_delta(self, costing_engine, receive_batches, session):
        (batch,) = receive_batches([("B1", 5, 10)])

        costing_engine.adjust(batch.id, Decimal("3"), reason="cycle count")

        (movement,) = _movements(session, MovementDirection.ADJUST)
        assert movement.quantity == Decimal("-2")
        assert movement.total_cost == Decimal("-20")
        assert movement.notes == "cycle count"

    def test_unchanged_count_writes_no_movement(self, costing_engine, receive_batches, session):
        (batch,) = receive_batches([("B1", 5, 10)])

        costing_engine.adjust(batch.id, Decimal("5"))

        assert _movements(session, MovementDirection.ADJUST) == []


class TestRecordConsumption:

    def test_one_movement_per_batch_line(self, costing_engine, receive_batches, make_product, session):
        receive_batches(LOTS)
        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("7"))
        costing_engine.commit(quote)

        costing_engine.record_consumption(quote, "sale", "INV-1")

        outs = _movements(session, MovementDirection.OUT)
        assert sorted((m.quantity, m.total_cost) for m in outs) == [
            (Decimal("2"), Decimal("40")),
            (Decimal("5"), Decimal("50")),
        ]
        assert {m.cost_method for m in outs} == {"fifo"}

    def test_pool_method_single_movement(self, costing_engine, receive_batches, make_product, session):
        receive_batches([("B1", 5, 10), ("B2", 5, 20)])
        quote = costing_engine.valuate(make_product("weighted_average"), "WH-1", Decimal("3"))

        costing_engine.record_consumption(quote, "sale", "INV-2")

        (movement,) = _movements(session, MovementDirection.OUT)
        assert movement.batch_id is None
        assert movement.total_cost == Decimal("45")

    def test_shortfall_recorded_at_zero_cost(self, costing_engine, receive_batches, make_product, session):
        receive_batches([("B1", 2, 10)])
        quote = costing_engine.valuate(make_product("fifo"), "WH-1", Decimal("3"))
        costing_engine.commit(quote)

        costing_engine.record_consumption(quote, "sale", "INV-3")

        outs = _movements(session, MovementDirection.OUT)
        uncovered = [m for m in outs if m.batch_id is None]
        assert len(outs) == 2
        assert uncovered[0].quantity == Decimal("1")
        assert uncovered[0].total_cost == 0
