"""
Pure domain layer.

Immutable value objects shared by the ledger, selectors and engines,
with NO dependency on the ORM or database.
"""

from costing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from costing_kernel.domain.dtos import (
    BatchOrder,
    BatchSnapshot,
    BatchStatus,
    InventoryValuation,
    MovementDirection,
    ProductCosting,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "BatchOrder",
    "BatchSnapshot",
    "BatchStatus",
    "InventoryValuation",
    "MovementDirection",
    "ProductCosting",
]
