"""
costing_engines.valuation.allocation -- Pure cost allocation over batch snapshots.

Responsibility:
    Compute the cost of a requested quantity under each CostMethod,
    producing an immutable CostAllocationResult.  FIFO and LIFO walk
    batches in acquisition order and name the batches they draw from;
    weighted average and standard price from a pool and name none.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Batches arrive through
    an injected ``fetch_batches(order)`` callable; the stateful
    CostingEngine in costing_services supplies it from the BatchLedger.

Invariants enforced:
    - Decimal only.  Rounding goes through round_cost (ROUND_HALF_UP).
    - FIFO/LIFO: allocated_quantity + shortfall == requested_quantity
      (for positive requests) and total_cost == sum(line_cost).
    - Shortfall is reported, never raised.  The uncovered quantity is
      priced at zero.
    - Dispatch is closed: every CostMethod member has exactly one
      valuator; anything else resolves to the weighted-average arm.

Failure modes:
    - TypeError from to_decimal for float quantities.
    - Exceptions raised by fetch_batches propagate unchanged.

Audit relevance:
    batches_used is the input to CostingEngine.commit and to the per-batch
    stock movements; line_cost gives the COGS contribution of each lot.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from costing_kernel.db.types import (
    COST_DECIMAL_PLACES,
    UNIT_COST_DECIMAL_PLACES,
    ZERO,
    format_decimal,
    round_cost,
    to_decimal,
)
from costing_kernel.domain.dtos import BatchOrder, BatchSnapshot
from costing_kernel.logging_config import get_logger
from costing_engines.tracer import traced_engine
from costing_engines.valuation.cost_method import CostMethod

logger = get_logger("engines.valuation.allocation")

BatchQuery = Callable[[BatchOrder], Iterable[BatchSnapshot]]

DEFAULT_COST_METHOD = CostMethod.WEIGHTED_AVERAGE


class CostedProduct(Protocol):
    """Catalog view of a product, as consumed by the valuators."""

    product_id: str
    cost_method: Any
    standard_cost: Decimal | None


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True, slots=True)
class BatchAllocation:
    """Quantity drawn from one batch at that batch's acquisition cost."""

    batch_id: UUID
    batch_number: str
    quantity_taken: Decimal
    unit_cost: Decimal
    line_cost: Decimal

    @classmethod
    def take(cls, batch: BatchSnapshot, quantity: Decimal) -> BatchAllocation:
        return cls(
            batch_id=batch.batch_id,
            batch_number=batch.batch_number,
            quantity_taken=quantity,
            unit_cost=batch.unit_cost,
            line_cost=round_cost(quantity * batch.unit_cost, COST_DECIMAL_PLACES),
        )


@dataclass(frozen=True, slots=True)
class CostAllocationResult:
    """
    Outcome of a valuation: a quote, not a commitment.

    ``batches_used`` is empty for weighted average and standard cost.
    """

    product_id: str
    warehouse_id: str
    cost_method: CostMethod
    requested_quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    batches_used: tuple[BatchAllocation, ...] = field(default_factory=tuple)
    allocated_quantity: Decimal = ZERO
    shortfall: Decimal = ZERO

    @property
    def has_shortfall(self) -> bool:
        return self.shortfall > 0

    @property
    def consumes_batches(self) -> bool:
        return bool(self.batches_used)


# =============================================================================
# Batch walk
# =============================================================================


def allocate_sequential(
    batches: Iterable[BatchSnapshot],
    quantity: Decimal,
) -> tuple[tuple[BatchAllocation, ...], Decimal]:
    """
    Draw ``quantity`` from batches in the order given.

    Takes min(remaining, batch.quantity) from each batch until the request
    is satisfied or batches run out.  Stops pulling from the iterable as
    soon as the request is covered and closes it.

    Returns:
        (allocations, allocated_quantity)
    """
    allocations: list[BatchAllocation] = []
    remaining = quantity
    iterator: Iterator[BatchSnapshot] = iter(batches)
    try:
        while remaining > 0:
            batch = next(iterator, None)
            if batch is None:
                break
            if batch.quantity <= 0:
                continue
            take = min(remaining, batch.quantity)
            allocations.append(BatchAllocation.take(batch, take))
            remaining -= take
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()

    allocated = sum((a.quantity_taken for a in allocations), ZERO)
    return tuple(allocations), allocated


def _sequential(
    method: CostMethod,
    order: BatchOrder,
    fetch_batches: BatchQuery,
    quantity: Decimal,
    product: CostedProduct,
    warehouse_id: str,
    unit_cost_places: int,
) -> CostAllocationResult:
    if quantity > 0:
        allocations, allocated = allocate_sequential(fetch_batches(order), quantity)
    else:
        allocations, allocated = (), ZERO

    total_cost = sum((a.line_cost for a in allocations), ZERO)
    unit_cost = (
        round_cost(total_cost / quantity, unit_cost_places) if quantity > 0 else ZERO
    )
    shortfall = quantity - allocated if quantity > allocated else ZERO

    if shortfall > 0:
        logger.warning("valuation_shortfall", extra={
            "product_id": product.product_id,
            "warehouse_id": warehouse_id,
            "cost_method": method.value,
            "requested": format_decimal(quantity),
            "allocated": format_decimal(allocated),
            "shortfall": format_decimal(shortfall),
        })

    return CostAllocationResult(
        product_id=product.product_id,
        warehouse_id=warehouse_id,
        cost_method=method,
        requested_quantity=quantity,
        unit_cost=unit_cost,
        total_cost=total_cost,
        batches_used=allocations,
        allocated_quantity=allocated,
        shortfall=shortfall,
    )


# =============================================================================
# Valuators (one per CostMethod member)
# =============================================================================


@traced_engine("valuation.fifo", "1.0", fingerprint_fields=("product", "quantity", "warehouse_id"))
def value_fifo(
    fetch_batches: BatchQuery,
    quantity: Decimal,
    product: CostedProduct,
    *,
    warehouse_id: str,
    unit_cost_places: int = UNIT_COST_DECIMAL_PLACES,
) -> CostAllocationResult:
    """Oldest batches first."""
    return _sequential(
        CostMethod.FIFO, BatchOrder.OLDEST_FIRST,
        fetch_batches, quantity, product, warehouse_id, unit_cost_places,
    )


@traced_engine("valuation.lifo", "1.0", fingerprint_fields=("product", "quantity", "warehouse_id"))
def value_lifo(
    fetch_batches: BatchQuery,
    quantity: Decimal,
    product: CostedProduct,
    *,
    warehouse_id: str,
    unit_cost_places: int = UNIT_COST_DECIMAL_PLACES,
) -> CostAllocationResult:
    """Newest batches first."""
    return _sequential(
        CostMethod.LIFO, BatchOrder.NEWEST_FIRST,
        fetch_batches, quantity, product, warehouse_id, unit_cost_places,
    )


@traced_engine("valuation.weighted_average", "1.0", fingerprint_fields=("product", "quantity", "warehouse_id"))
def value_weighted_average(
    fetch_batches: BatchQuery,
    quantity: Decimal,
    product: CostedProduct,
    *,
    warehouse_id: str,
    unit_cost_places: int = UNIT_COST_DECIMAL_PLACES,
) -> CostAllocationResult:
    """
    Price the request at the pooled average of all active batches.

    unit_cost = sum(q * c) / sum(q), zero with no active quantity.
    total_cost is computed from the unrounded average so that the
    reported unit cost's rounding does not leak into it.
    """
    total_value = ZERO
    total_quantity = ZERO
    for batch in fetch_batches(BatchOrder.OLDEST_FIRST):
        total_value += batch.quantity * batch.unit_cost
        total_quantity += batch.quantity

    if total_quantity > 0:
        unit_cost = round_cost(total_value / total_quantity, unit_cost_places)
        total_cost = (
            round_cost(total_value * quantity / total_quantity, COST_DECIMAL_PLACES)
            if quantity > 0 else ZERO
        )
    else:
        unit_cost = ZERO
        total_cost = ZERO

    return CostAllocationResult(
        product_id=product.product_id,
        warehouse_id=warehouse_id,
        cost_method=CostMethod.WEIGHTED_AVERAGE,
        requested_quantity=quantity,
        unit_cost=unit_cost,
        total_cost=total_cost,
        allocated_quantity=quantity if quantity > 0 else ZERO,
    )


@traced_engine("valuation.standard", "1.0", fingerprint_fields=("product", "quantity", "warehouse_id"))
def value_standard(
    fetch_batches: BatchQuery,
    quantity: Decimal,
    product: CostedProduct,
    *,
    warehouse_id: str,
    unit_cost_places: int = UNIT_COST_DECIMAL_PLACES,
) -> CostAllocationResult:
    """Price the request at the product's standard cost (zero if unset)."""
    standard = product.standard_cost
    unit_cost = to_decimal(standard) if standard is not None else ZERO
    total_cost = (
        round_cost(unit_cost * quantity, COST_DECIMAL_PLACES) if quantity > 0 else ZERO
    )

    return CostAllocationResult(
        product_id=product.product_id,
        warehouse_id=warehouse_id,
        cost_method=CostMethod.STANDARD,
        requested_quantity=quantity,
        unit_cost=unit_cost,
        total_cost=total_cost,
        allocated_quantity=quantity if quantity > 0 else ZERO,
    )


VALUATORS: dict[CostMethod, Callable[..., CostAllocationResult]] = {
    CostMethod.FIFO: value_fifo,
    CostMethod.LIFO: value_lifo,
    CostMethod.WEIGHTED_AVERAGE: value_weighted_average,
    CostMethod.STANDARD: value_standard,
}


# =============================================================================
# Dispatch
# =============================================================================


def resolve_method(
    raw: object,
    product_id: str,
    default: CostMethod = DEFAULT_COST_METHOD,
) -> CostMethod:
    """
    Map a catalog cost-method value to a CostMethod.

    Missing or unrecognized values take the default arm and log a warning.
    """
    method = CostMethod.parse(raw)
    if method is None:
        logger.warning("cost_method_fallback", extra={
            "product_id": product_id,
            "configured_method": None if raw is None else str(raw),
            "fallback_method": default.value,
        })
        return default
    return method


def allocate(
    fetch_batches: BatchQuery,
    quantity: Decimal | int | str,
    product: CostedProduct,
    *,
    warehouse_id: str,
    unit_cost_places: int = UNIT_COST_DECIMAL_PLACES,
    default_method: CostMethod = DEFAULT_COST_METHOD,
) -> CostAllocationResult:
    """
    Value ``quantity`` of ``product`` using the product's cost method.

    Args:
        fetch_batches: Returns active batches in the requested order.
        quantity: Requested quantity (Decimal, int or numeric str).
        product: Object exposing product_id, cost_method, standard_cost.
        warehouse_id: Warehouse the batches belong to.
        unit_cost_places: Decimal places of the reported unit cost.
        default_method: Arm taken for missing/unknown methods.

    Returns:
        CostAllocationResult (a quote; nothing is mutated).
    """
    qty = to_decimal(quantity)
    method = resolve_method(product.cost_method, product.product_id, default_method)
    valuator = VALUATORS[method]
    return valuator(
        fetch_batches=fetch_batches,
        quantity=qty,
        product=product,
        warehouse_id=warehouse_id,
        unit_cost_places=unit_cost_places,
    )
