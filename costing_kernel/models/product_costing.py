"""
Module: costing_kernel.models.product_costing
Responsibility: ORM persistence for per-product costing configuration
    (cost method and standard cost).  Owned by the product catalog; the
    costing engine only reads it.
Architecture position: Kernel > Models.  May import from db/ only.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base
from costing_kernel.db.types import ExactDecimal


class ProductCostingModel(Base):
    """Costing configuration row, one per product."""

    __tablename__ = "product_costing"

    product_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    # 'fifo' | 'lifo' | 'weighted_average' | 'standard'; free text so that a
    # malformed catalog value reaches the engine's fallback instead of failing
    # at load time
    cost_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    standard_cost: Mapped[Decimal | None] = mapped_column(
        ExactDecimal(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ProductCosting {self.product_id}: {self.cost_method}>"
