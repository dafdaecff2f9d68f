"""
Module: costing_kernel.models.consumption_record
Responsibility: One row per consumed business reference -- the store-backed
    guard that makes consumption idempotent per reference.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    C1 -- Once per reference.  (reference_type, reference_id, product_id,
          warehouse_id) is unique (uq_consumption_record_reference).  The
          row is claimed before any stock is touched and commits with the
          batch decrements and outbound movements, so a second transaction
          consuming the same reference fails on insert and writes nothing.
    C2 -- Never deleted.  total_cost and cost_method are filled in once,
          when the allocation commits in the claiming transaction.

Failure modes:
    - IntegrityError on a duplicate reference (C1).  ConsumptionService
      inserts inside a SAVEPOINT and reports ALREADY_CONSUMED.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base
from costing_kernel.db.types import ExactDecimal


class ConsumptionRecordModel(Base):
    """Idempotency record for a committed consumption."""

    __tablename__ = "consumption_records"

    __table_args__ = (
        UniqueConstraint(
            "reference_type",
            "reference_id",
            "product_id",
            "warehouse_id",
            name="uq_consumption_record_reference",
        ),
    )

    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)

    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)

    product_id: Mapped[str] = mapped_column(String(100), nullable=False)

    warehouse_id: Mapped[str] = mapped_column(String(100), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False)

    # Filled in once the allocation commits, in the same transaction
    total_cost: Mapped[Decimal | None] = mapped_column(ExactDecimal(), nullable=True)

    cost_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ConsumptionRecord {self.reference_type}:{self.reference_id} "
            f"product={self.product_id} warehouse={self.warehouse_id}>"
        )
