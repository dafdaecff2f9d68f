"""
Module: costing_kernel.selectors.stock_selector
Responsibility: Read-side stock queries -- on-hand quantity from stock
    movements, active batch quantity and value, and expiring batches.
Architecture position: Kernel > Selectors.  Read-only; see BaseSelector.

Invariants enforced:
    - On-hand quantity is derived, never stored:
      sum(in) - sum(out) + sum(adjust) over stock movements.
    - Batch quantity and value consider active batches only.
    - Sums are exact Decimal on every dialect: SQL SUM on PostgreSQL,
      client-side addition where decimals are stored as text.

Failure modes:
    - None beyond database errors; empty sets yield zero quantities.

Audit relevance:
    on_hand() and batch_quantity() are computed from independent tables.
    Their agreement is a reconciliation check between the movement trail
    and the batch ledger.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol, runtime_checkable

from sqlalchemy import func, select

from costing_kernel.db.types import NATIVE_DECIMAL_DIALECTS, ZERO
from costing_kernel.domain.dtos import BatchSnapshot, BatchStatus, InventoryValuation, MovementDirection
from costing_kernel.models.inventory_batch import InventoryBatchModel
from costing_kernel.models.stock_movement import StockMovementModel
from costing_kernel.selectors.base import BaseSelector


@runtime_checkable
class StockLevelProvider(Protocol):
    """Protocol for the stock layer consulted before consuming inventory.

    Contract:
        - ``on_hand()``: current on-hand quantity for a product at a
          warehouse.  May be negative where negative stock is permitted.
    """

    def on_hand(self, product_id: str, warehouse_id: str) -> Decimal:
        ...


class StockSelector(BaseSelector):
    """
    Stock level and inventory value queries.

    Satisfies StockLevelProvider.
    """

    def on_hand(self, product_id: str, warehouse_id: str) -> Decimal:
        """
        On-hand quantity derived from the stock movement trail.

        Args:
            product_id: Product to query.
            warehouse_id: Warehouse to query.

        Returns:
            sum(in) - sum(out) + sum(adjust); zero with no movements.
        """
        scope = (
            StockMovementModel.product_id == product_id,
            StockMovementModel.warehouse_id == warehouse_id,
        )
        if self._sums_in_store():
            rows = self.session.execute(
                select(
                    StockMovementModel.direction,
                    func.coalesce(func.sum(StockMovementModel.quantity), ZERO),
                )
                .where(*scope)
                .group_by(StockMovementModel.direction)
            ).all()
        else:
            rows = self.session.execute(
                select(StockMovementModel.direction, StockMovementModel.quantity).where(*scope)
            ).all()

        totals: dict[str, Decimal] = {}
        for direction, quantity in rows:
            totals[direction] = totals.get(direction, ZERO) + (quantity or ZERO)
        return (
            totals.get(MovementDirection.IN.value, ZERO)
            - totals.get(MovementDirection.OUT.value, ZERO)
            + totals.get(MovementDirection.ADJUST.value, ZERO)
        )

    def batch_quantity(self, product_id: str, warehouse_id: str) -> Decimal:
        """Sum of quantities over active batches."""
        scope = (
            InventoryBatchModel.product_id == product_id,
            InventoryBatchModel.warehouse_id == warehouse_id,
            InventoryBatchModel.status == BatchStatus.ACTIVE.value,
        )
        if self._sums_in_store():
            total = self.session.execute(
                select(func.coalesce(func.sum(InventoryBatchModel.quantity), ZERO)).where(*scope)
            ).scalar_one()
            return total or ZERO
        return sum(
            self.session.scalars(select(InventoryBatchModel.quantity).where(*scope)),
            ZERO,
        )

    def inventory_value(self, product_id: str, warehouse_id: str) -> InventoryValuation:
        """
        Quantity and acquisition-cost value of active batches.

        Value is summed in Decimal on the client so that the result does
        not depend on the store's product arithmetic.
        """
        rows = self.session.execute(
            select(InventoryBatchModel.quantity, InventoryBatchModel.unit_cost).where(
                InventoryBatchModel.product_id == product_id,
                InventoryBatchModel.warehouse_id == warehouse_id,
                InventoryBatchModel.status == BatchStatus.ACTIVE.value,
            )
        ).all()

        quantity = ZERO
        value = ZERO
        batch_count = 0
        for batch_quantity, unit_cost in rows:
            if batch_quantity <= 0:
                continue
            quantity += batch_quantity
            value += batch_quantity * unit_cost
            batch_count += 1

        return InventoryValuation(
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            value=value,
            batch_count=batch_count,
        )

    def expiring_batches(self, warehouse_id: str, before: date) -> list[BatchSnapshot]:
        """Active batches at a warehouse whose expiry date falls before ``before``."""
        rows = self.session.scalars(
            select(InventoryBatchModel)
            .where(
                InventoryBatchModel.warehouse_id == warehouse_id,
                InventoryBatchModel.status == BatchStatus.ACTIVE.value,
                InventoryBatchModel.expiry_date.is_not(None),
                InventoryBatchModel.expiry_date < before,
            )
            .order_by(InventoryBatchModel.expiry_date, InventoryBatchModel.batch_number)
        ).all()

        return [
            BatchSnapshot(
                batch_id=row.id,
                product_id=row.product_id,
                warehouse_id=row.warehouse_id,
                batch_number=row.batch_number,
                quantity=row.quantity,
                unit_cost=row.unit_cost,
                status=BatchStatus(row.status),
                created_at=row.created_at,
                expiry_date=row.expiry_date,
            )
            for row in rows
            if row.quantity > 0
        ]

    def _sums_in_store(self) -> bool:
        # SUM over text-stored decimals would go through REAL on SQLite
        return self.session.get_bind().dialect.name in NATIVE_DECIMAL_DIALECTS
