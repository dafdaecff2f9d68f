"""
CostingEngine -- quote costs, commit allocations, receive and adjust stock.

Responsibility:
    Stateful shell around the pure valuators in costing_engines.  Supplies
    them with active batches from the BatchLedger, applies committed
    allocations to the ledger under row locks, and writes the stock
    movement for every receipt and adjustment in the same session.

Architecture position:
    Services -- imperative shell.  Owns no transaction: callers wrap calls
    in session_scope() (or ConsumptionService does).

Invariants enforced:
    - Two-phase protocol.  valuate() reads without locks and returns a
      quote.  commit() re-validates every line against the locked row
      before decrementing and never trusts the quote.
    - All-or-nothing commit.  Decrements run in one SAVEPOINT in
      batches_used order; any failure rolls back every decrement.
    - No retries.  Contention and stale quotes surface as typed errors.
    - Every batch mutation has a stock movement in the same unit of work.

Failure modes:
    - StaleAllocationError: a batch holds less than its quoted quantity.
    - BatchNotFoundError: a quoted batch no longer exists.
    - ContentionError: lock wait timeout or deadlock.
    - InvalidQuantityError: bad receipt or adjustment arguments.

Audit relevance:
    valuation_completed / allocation_committed log records carry the
    product, warehouse, method and totals; stock movements persist the
    trail from each consumption back to the batches it drew on.

Usage:
    engine = CostingEngine(session, clock, config)
    quote = engine.valuate(product, "WH-1", Decimal("7"))
    engine.commit(quote)
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingConfig
from costing_engines.valuation import CostAllocationResult, CostMethod, allocate
from costing_engines.valuation.allocation import CostedProduct
from costing_kernel.db.locking import acquire_stock_lock, lock_errors_as_contention
from costing_kernel.db.types import (
    CLAMP_TOLERANCE,
    COST_DECIMAL_PLACES,
    ZERO,
    format_decimal,
    round_cost,
    to_decimal,
)
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.dtos import BatchOrder, MovementDirection
from costing_kernel.exceptions import StaleAllocationError
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.inventory_batch import InventoryBatchModel
from costing_kernel.models.stock_movement import StockMovementModel
from costing_kernel.services.batch_ledger import BatchLedger

logger = get_logger("services.costing_engine")


class CostingEngine:
    """
    Inventory costing over the batch ledger.

    Contract:
        Receives Session, Clock and CostingConfig via constructor
        injection.  Flushes within the caller's transaction; never
        commits the outer transaction.

    Guarantees:
        - valuate() mutates nothing and takes no locks.
        - commit() leaves every batch with quantity >= 0 and applies
          either all decrements of an allocation or none.
        - receive() and adjust() write a stock movement for the batch
          change they make.
        - receive() applies a referenced receipt once per product and
          warehouse.

    Non-goals:
        - Does NOT check stock sufficiency or duplicate consumption
          (ConsumptionService does).
        - Does NOT retry.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        config: CostingConfig | None = None,
    ):
        self._session = session
        self._clock = clock
        self._config = config or CostingConfig()
        self._ledger = BatchLedger(
            session, clock, batch_number_prefix=self._config.batch_number_prefix,
        )

    @property
    def ledger(self) -> BatchLedger:
        return self._ledger

    # =========================================================================
    # Valuation (phase one)
    # =========================================================================

    def valuate(
        self,
        product: CostedProduct,
        warehouse_id: str,
        quantity: Decimal | int | str,
    ) -> CostAllocationResult:
        """
        Quote the cost of ``quantity`` of ``product`` at ``warehouse_id``.

        Args:
            product: Object exposing product_id, cost_method, standard_cost.
            warehouse_id: Warehouse whose batches are valued.
            quantity: Requested quantity.

        Returns:
            CostAllocationResult.  Shortfall is reported on the result,
            never raised.
        """
        product_id = product.product_id

        def fetch_batches(order: BatchOrder):
            return self._ledger.find_active_batches(product_id, warehouse_id, order)

        with LogContext.bind(product_id=product_id, warehouse_id=warehouse_id):
            result = allocate(
                fetch_batches,
                quantity,
                product,
                warehouse_id=warehouse_id,
                unit_cost_places=self._config.unit_cost_decimal_places,
                default_method=self._config.default_cost_method,
            )

            logger.info("valuation_completed", extra={
                "cost_method": result.cost_method.value,
                "requested_quantity": format_decimal(result.requested_quantity),
                "allocated_quantity": format_decimal(result.allocated_quantity),
                "shortfall": format_decimal(result.shortfall),
                "unit_cost": format_decimal(result.unit_cost),
                "total_cost": format_decimal(result.total_cost),
                "batch_count": len(result.batches_used),
            })
        return result

    # =========================================================================
    # Commit (phase two)
    # =========================================================================

    def commit(self, allocation: CostAllocationResult) -> list[InventoryBatchModel]:
        """
        Apply a quoted allocation to the batch ledger.

        Preconditions:
            allocation came from valuate(); only FIFO/LIFO quotes name
            batches.  A quote with no batches_used is a no-op.

        Postconditions:
            Every batch in batches_used has been decremented by its
            quantity_taken, or (on any error) none has.

        Returns:
            The updated batch rows in batches_used order.

        Raises:
            StaleAllocationError: Locked quantity below quoted quantity.
            BatchNotFoundError: A quoted batch no longer exists.
            ContentionError: Lock wait timeout or deadlock.
        """
        if not allocation.batches_used:
            return []

        updated: list[InventoryBatchModel] = []
        with LogContext.bind(
            product_id=allocation.product_id,
            warehouse_id=allocation.warehouse_id,
        ):
            with lock_errors_as_contention("commit"):
                with self._session.begin_nested():
                    for line in allocation.batches_used:
                        locked = self._ledger.lock_batch(line.batch_id)
                        if locked.quantity + CLAMP_TOLERANCE < line.quantity_taken:
                            logger.warning("commit_rejected_stale", extra={
                                "batch_id": str(line.batch_id),
                                "batch_number": line.batch_number,
                                "quoted_quantity": format_decimal(line.quantity_taken),
                                "locked_quantity": format_decimal(locked.quantity),
                            })
                            raise StaleAllocationError(
                                batch_id=str(line.batch_id),
                                requested_quantity=format_decimal(line.quantity_taken),
                                available_quantity=format_decimal(locked.quantity),
                            )
                        updated.append(
                            self._ledger.decrement_batch(line.batch_id, line.quantity_taken)
                        )

            logger.info("allocation_committed", extra={
                "cost_method": allocation.cost_method.value,
                "batch_count": len(updated),
                "allocated_quantity": format_decimal(allocation.allocated_quantity),
                "total_cost": format_decimal(allocation.total_cost),
            })
        return updated

    # =========================================================================
    # Receipts and adjustments
    # =========================================================================

    def receive(
        self,
        product_id: str,
        warehouse_id: str,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        batch_number: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        acquired_at: datetime | None = None,
    ) -> InventoryBatchModel:
        """
        Receive stock into a batch and record the inbound movement.

        The movement is valued at the batch's unit cost, which for a merge
        into an existing batch is the batch's original acquisition cost.

        A receipt carrying both reference_type and reference_id is applied
        once: when an inbound movement already exists for the same
        reference, product and warehouse, nothing is written and the batch
        that receipt went into is returned.

        Raises:
            InvalidQuantityError: quantity <= 0 or unit_cost < 0.
            ContentionError: Lock wait timeout.
        """
        qty = to_decimal(quantity)
        with LogContext.bind(product_id=product_id, warehouse_id=warehouse_id):
            if reference_type is not None and reference_id is not None:
                acquire_stock_lock(self._session, product_id, warehouse_id)
                existing = self._recorded_receipt(
                    product_id, warehouse_id, reference_type, reference_id,
                )
                if existing is not None:
                    logger.info("receipt_duplicate_skipped", extra={
                        "reference_type": reference_type,
                        "reference_id": reference_id,
                        "movement_id": str(existing.id),
                    })
                    return self._ledger.get_batch(existing.batch_id)

            batch = self._ledger.upsert_batch(
                product_id,
                warehouse_id,
                batch_number,
                qty,
                unit_cost,
                metadata=metadata,
                acquired_at=acquired_at,
            )
            self._add_movement(
                product_id=product_id,
                warehouse_id=warehouse_id,
                batch_id=batch.id,
                direction=MovementDirection.IN,
                quantity=qty,
                unit_cost=batch.unit_cost,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            with lock_errors_as_contention("receive"):
                self._session.flush()
        return batch

    def adjust(
        self,
        batch_id: UUID,
        new_quantity: Decimal | int | str,
        reason: str | None = None,
    ) -> InventoryBatchModel:
        """
        Set a batch's quantity from a stock count and record the delta.

        A zero delta changes status only (if at all) and writes no movement.
        """
        batch, delta = self._ledger.adjust_batch(batch_id, new_quantity)
        if delta != 0:
            self._add_movement(
                product_id=batch.product_id,
                warehouse_id=batch.warehouse_id,
                batch_id=batch.id,
                direction=MovementDirection.ADJUST,
                quantity=delta,
                unit_cost=batch.unit_cost,
                reference_type="adjustment",
                reference_id=None,
                notes=reason,
            )
            with lock_errors_as_contention("adjust"):
                self._session.flush()
        return batch

    def record_consumption(
        self,
        allocation: CostAllocationResult,
        reference_type: str | None,
        reference_id: str | None,
    ) -> list[StockMovementModel]:
        """
        Write outbound movements for a committed allocation.

        FIFO/LIFO allocations produce one movement per batch line; pooled
        methods produce a single movement at the quoted unit cost.
        """
        movements: list[StockMovementModel] = []
        if allocation.batches_used:
            for line in allocation.batches_used:
                movements.append(self._add_movement(
                    product_id=allocation.product_id,
                    warehouse_id=allocation.warehouse_id,
                    batch_id=line.batch_id,
                    direction=MovementDirection.OUT,
                    quantity=line.quantity_taken,
                    unit_cost=line.unit_cost,
                    total_cost=line.line_cost,
                    cost_method=allocation.cost_method,
                    reference_type=reference_type,
                    reference_id=reference_id,
                ))
            if allocation.has_shortfall:
                # Uncovered quantity leaves stock at zero cost
                movements.append(self._add_movement(
                    product_id=allocation.product_id,
                    warehouse_id=allocation.warehouse_id,
                    batch_id=None,
                    direction=MovementDirection.OUT,
                    quantity=allocation.shortfall,
                    unit_cost=ZERO,
                    total_cost=ZERO,
                    cost_method=allocation.cost_method,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    notes="uncovered shortfall",
                ))
        elif allocation.requested_quantity > 0:
            movements.append(self._add_movement(
                product_id=allocation.product_id,
                warehouse_id=allocation.warehouse_id,
                batch_id=None,
                direction=MovementDirection.OUT,
                quantity=allocation.requested_quantity,
                unit_cost=allocation.unit_cost,
                total_cost=allocation.total_cost,
                cost_method=allocation.cost_method,
                reference_type=reference_type,
                reference_id=reference_id,
            ))

        with lock_errors_as_contention("record_consumption"):
            self._session.flush()
        return movements

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _add_movement(
        self,
        *,
        product_id: str,
        warehouse_id: str,
        batch_id: UUID | None,
        direction: MovementDirection,
        quantity: Decimal,
        unit_cost: Decimal,
        reference_type: str | None,
        reference_id: str | None,
        total_cost: Decimal | None = None,
        cost_method: CostMethod | None = None,
        notes: str | None = None,
    ) -> StockMovementModel:
        if total_cost is None:
            total_cost = round_cost(quantity * unit_cost, COST_DECIMAL_PLACES)

        movement = StockMovementModel(
            id=uuid4(),
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch_id=batch_id,
            direction=direction.value,
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=total_cost,
            cost_method=cost_method.value if cost_method is not None else None,
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
            created_at=self._clock.now(),
        )
        self._session.add(movement)

        logger.info("stock_movement_recorded", extra={
            "movement_id": str(movement.id),
            "batch_id": str(batch_id) if batch_id is not None else None,
            "direction": direction.value,
            "quantity": format_decimal(quantity),
            "total_cost": format_decimal(total_cost),
            "reference_type": reference_type,
            "reference_id": reference_id,
        })
        return movement

    def _recorded_receipt(
        self,
        product_id: str,
        warehouse_id: str,
        reference_type: str,
        reference_id: str,
    ) -> StockMovementModel | None:
        return self._session.execute(
            select(StockMovementModel)
            .where(
                StockMovementModel.direction == MovementDirection.IN.value,
                StockMovementModel.reference_type == reference_type,
                StockMovementModel.reference_id == reference_id,
                StockMovementModel.product_id == product_id,
                StockMovementModel.warehouse_id == warehouse_id,
            )
            .limit(1)
        ).scalar_one_or_none()
