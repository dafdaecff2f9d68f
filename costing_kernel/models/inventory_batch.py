"""
Module: costing_kernel.models.inventory_batch
Responsibility: ORM persistence for inventory batches (lots).  Each row is a
    discrete quantity of a product acquired at one unit cost, tracked
    separately per warehouse, forming the basis for FIFO and LIFO
    allocation and the weighted-average pool.
Architecture position: Kernel > Models.  May import from db/ only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    B1 -- Identity.  (product_id, warehouse_id, batch_number) is unique,
          enforced by the store (uq_inventory_batch_identity) so that
          concurrent receipts of the same lot cannot create duplicates.
    B2 -- Non-negative quantity.  CHECK (CAST(quantity AS NUMERIC) >= 0);
          the cast keeps the check numeric where the column is stored as text.
    B3 -- Depletion.  status = 'depleted' iff quantity = 0 (maintained by
          BatchLedger under row lock; not expressible as a portable CHECK
          because a depleted row may be revived by a later receipt).
    B4 -- Acquisition cost.  unit_cost is fixed when the row is first
          inserted; merges add quantity only.

Failure modes:
    - IntegrityError on duplicate identity (B1).  BatchLedger catches this
      inside a SAVEPOINT and merges or regenerates the batch number.
    - IntegrityError on negative quantity (B2) if a caller bypasses the
      ledger.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base
from costing_kernel.db.types import ExactDecimal


class InventoryBatchModel(Base):
    """
    Persistent storage for inventory batches.

    Contract:
        Rows are created on receipt and mutated only through BatchLedger
        (merge, decrement, adjust).  Rows are never deleted; a consumed
        batch is marked depleted.

    Guarantees:
        - (product_id, warehouse_id, batch_number) unique (B1).
        - quantity >= 0 (B2).
        - (product_id, warehouse_id, status, created_at) index supports
          FIFO/LIFO ordered scans of active batches.
    """

    __tablename__ = "inventory_batches"

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "warehouse_id",
            "batch_number",
            name="uq_inventory_batch_identity",
        ),
        CheckConstraint(
            "CAST(quantity AS NUMERIC) >= 0",
            name="ck_inventory_batch_quantity_non_negative",
        ),
        # Query: active batches for a product at a warehouse, by acquisition time
        Index(
            "idx_inventory_batch_allocation",
            "product_id",
            "warehouse_id",
            "status",
            "created_at",
        ),
        Index("idx_inventory_batch_branch_status", "branch_id", "status"),
        Index("idx_inventory_batch_expiry", "expiry_date"),
    )

    product_id: Mapped[str] = mapped_column(String(100), nullable=False)

    warehouse_id: Mapped[str] = mapped_column(String(100), nullable=False)

    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    # INVARIANT B2: never negative
    quantity: Mapped[Decimal] = mapped_column(
        ExactDecimal(),
        nullable=False,
        default=Decimal("0"),
    )

    # INVARIANT B4: set on insert, preserved on merge
    unit_cost: Mapped[Decimal] = mapped_column(
        ExactDecimal(),
        nullable=False,
        default=Decimal("0"),
    )

    # INVARIANT B3: 'active' | 'depleted'
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
    )

    # Acquisition timestamp -- FIFO/LIFO ordering key
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Descriptive fields
    branch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    manufacturing_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    supplier_batch_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    purchase_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    @property
    def is_depleted(self) -> bool:
        return self.status == "depleted"

    def __repr__(self) -> str:
        return (
            f"<InventoryBatch {self.batch_number}: product={self.product_id} "
            f"warehouse={self.warehouse_id} qty={self.quantity} "
            f"@ {self.unit_cost} [{self.status}]>"
        )
