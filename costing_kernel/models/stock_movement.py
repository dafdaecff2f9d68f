"""
Module: costing_kernel.models.stock_movement
Responsibility: ORM persistence for stock movements -- the audit record of
    every receipt, consumption and adjustment that touches the batch ledger.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    M1 -- Same unit of work.  A movement is flushed in the same session as
          the batch mutation it describes, so both commit or neither does.
    M2 -- Sign convention.  quantity is positive for 'in' and 'out';
          'adjust' rows carry the signed delta applied to the batch.
    M3 -- Append-only.  Movements are never updated or deleted.

Audit relevance:
    Movements are the stock layer's source of truth for on-hand quantity
    (StockSelector.on_hand) and the trail from a sale line back to the
    batches that costed it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base, UUIDString
from costing_kernel.db.types import ExactDecimal


class StockMovementModel(Base):
    """Append-only stock movement row."""

    __tablename__ = "stock_movements"

    __table_args__ = (
        # Query: on-hand quantity per product/warehouse
        Index("idx_stock_movement_product_warehouse", "product_id", "warehouse_id"),
        # Query: duplicate receipt detection per business reference
        Index(
            "idx_stock_movement_reference",
            "reference_type",
            "reference_id",
            "product_id",
        ),
        Index("idx_stock_movement_batch", "batch_id"),
    )

    product_id: Mapped[str] = mapped_column(String(100), nullable=False)

    warehouse_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Null for weighted-average / standard consumptions (pool, not lot)
    batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # 'in' | 'out' | 'adjust'
    direction: Mapped[str] = mapped_column(String(10), nullable=False)

    # INVARIANT M2
    quantity: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False)

    cost_method: Mapped[str | None] = mapped_column(String(20), nullable=True)

    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    reference_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.direction} {self.quantity} "
            f"product={self.product_id} warehouse={self.warehouse_id}>"
        )
