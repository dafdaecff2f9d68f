"""
costing_engines.valuation.cost_method -- Closed set of inventory costing methods.

Responsibility:
    Define the CostMethod enum and resolve raw catalog strings into it.

Architecture position:
    Engines -- pure, zero I/O.

Failure modes:
    - InvalidMethodError from ``parse(value, strict=True)`` for values
      that name no member.  Non-strict parsing returns None instead and
      lets the dispatcher fall back to the default arm.
"""

from __future__ import annotations

from enum import Enum

from costing_kernel.exceptions import InvalidMethodError


class CostMethod(str, Enum):
    """Inventory cost valuation methods."""

    FIFO = "fifo"                           # First-in, first-out
    LIFO = "lifo"                           # Last-in, first-out
    WEIGHTED_AVERAGE = "weighted_average"   # Pooled average of active batches
    STANDARD = "standard"                   # Predetermined per-unit cost

    @property
    def consumes_batches(self) -> bool:
        """True when a valuation names specific batches to decrement."""
        return self in (CostMethod.FIFO, CostMethod.LIFO)

    @classmethod
    def parse(cls, value: object, strict: bool = False) -> CostMethod | None:
        """
        Resolve a raw configuration value to a CostMethod.

        Matching is case-insensitive and ignores surrounding whitespace.

        Args:
            value: CostMethod, string, or None.
            strict: Raise instead of returning None for unrecognized values.

        Returns:
            The matching member, or None (non-strict) when unrecognized.

        Raises:
            InvalidMethodError: strict=True and value names no member.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        if strict:
            raise InvalidMethodError(value)
        return None
