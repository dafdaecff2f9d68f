"""
Domain DTOs -- immutable views passed between the kernel and the engines.

Responsibility:
    Frozen value objects that decouple the pure allocation engines from
    ORM rows.  The batch ledger and selectors convert rows into these
    before handing them outward.

Architecture position:
    Kernel > Domain -- zero I/O, no SQLAlchemy imports.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class BatchStatus(str, Enum):
    """Lifecycle status of an inventory batch."""

    ACTIVE = "active"
    DEPLETED = "depleted"


class BatchOrder(str, Enum):
    """Acquisition-time ordering for active batch queries."""

    OLDEST_FIRST = "oldest_first"   # FIFO
    NEWEST_FIRST = "newest_first"   # LIFO


class MovementDirection(str, Enum):
    """Direction of a stock movement record."""

    IN = "in"
    OUT = "out"
    ADJUST = "adjust"


@dataclass(frozen=True, slots=True)
class BatchSnapshot:
    """
    Point-in-time view of a batch row.

    Taken without a lock: valid for quoting, never for committing.
    """

    batch_id: UUID
    product_id: str
    warehouse_id: str
    batch_number: str
    quantity: Decimal
    unit_cost: Decimal
    status: BatchStatus
    created_at: datetime
    expiry_date: date | None = None

    @property
    def value(self) -> Decimal:
        """Remaining value of the batch at its acquisition cost."""
        return self.quantity * self.unit_cost

    @property
    def is_available(self) -> bool:
        return self.status == BatchStatus.ACTIVE and self.quantity > 0


@dataclass(frozen=True, slots=True)
class ProductCosting:
    """
    Costing configuration of a product, as supplied by the product catalog.

    ``cost_method`` is kept as the raw configured string; the engines
    resolve it (with a weighted-average fallback) at valuation time.
    """

    product_id: str
    cost_method: str | None = None
    standard_cost: Decimal | None = None


@dataclass(frozen=True, slots=True)
class InventoryValuation:
    """On-hand batch quantity and value for a product at a warehouse."""

    product_id: str
    warehouse_id: str
    quantity: Decimal
    value: Decimal
    batch_count: int

    @property
    def average_unit_cost(self) -> Decimal:
        if self.quantity == 0:
            return Decimal("0")
        return self.value / self.quantity
