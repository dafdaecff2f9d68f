"""Inventory valuation: cost methods and pure batch allocation."""

from costing_engines.valuation.allocation import (
    VALUATORS,
    BatchAllocation,
    BatchQuery,
    CostAllocationResult,
    allocate,
    allocate_sequential,
    resolve_method,
    value_fifo,
    value_lifo,
    value_standard,
    value_weighted_average,
)
from costing_engines.valuation.cost_method import CostMethod

__all__ = [
    "VALUATORS",
    "BatchAllocation",
    "BatchQuery",
    "CostAllocationResult",
    "CostMethod",
    "allocate",
    "allocate_sequential",
    "resolve_method",
    "value_fifo",
    "value_lifo",
    "value_standard",
    "value_weighted_average",
]
