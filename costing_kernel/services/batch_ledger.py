"""
BatchLedger -- durable store of inventory lots with row-locked mutation.

Responsibility:
    Query active batches for a (product, warehouse) in acquisition order,
    merge receipts into lots, and apply quantity decrements and explicit
    adjustments under an exclusive row lock.

Architecture position:
    Kernel > Services -- imperative shell over InventoryBatchModel.
    Called by costing_services.CostingEngine; never by engines (pure).

Invariants enforced:
    B1 -- Identity uniqueness is owned by the store.  Inserts run in a
          SAVEPOINT; an IntegrityError means a concurrent writer created the
          same identity first, and the receipt is merged into that row.
    B2 -- quantity >= 0 after every mutation.  Decrements overshooting by
          at most CLAMP_TOLERANCE clamp to zero; larger overshoots raise
          InvariantViolationError and change nothing.
    B3 -- quantity == 0 <=> status == depleted.  A merge or adjustment that
          makes a depleted batch positive reactivates it.
    B4 -- Merges never change unit_cost.
    L1 -- Every mutation locks its row (SELECT ... FOR UPDATE, refreshed
          with populate_existing) before reading the quantity it writes.

Failure modes:
    - BatchNotFoundError: decrement/adjust/lock targets a missing batch.
    - InvariantViolationError: decrement exceeds locked quantity.
    - InvalidQuantityError: non-positive delta/decrement, negative cost or
      negative adjustment target.
    - ContentionError: lock wait timeout or deadlock (retryable).

Usage:
    ledger = BatchLedger(session, clock)
    batch = ledger.upsert_batch("SKU-1", "WH-1", None, Decimal("10"), Decimal("4.50"))
    for snapshot in ledger.find_active_batches("SKU-1", "WH-1", BatchOrder.OLDEST_FIRST):
        ...
    ledger.decrement_batch(batch.id, Decimal("3"))
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costing_kernel.db.locking import lock_errors_as_contention
from costing_kernel.db.types import CLAMP_TOLERANCE, ZERO, format_decimal, to_decimal
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.dtos import BatchOrder, BatchSnapshot, BatchStatus
from costing_kernel.exceptions import (
    BatchNotFoundError,
    ContentionError,
    InvalidQuantityError,
    InvariantViolationError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.inventory_batch import InventoryBatchModel
from costing_kernel.services.base import BaseService

logger = get_logger("services.batch_ledger")

# Descriptive columns a receipt may populate; anything else goes to batch_metadata
_DESCRIPTIVE_FIELDS = frozenset({
    "branch_id",
    "manufacturing_date",
    "expiry_date",
    "supplier_batch_ref",
    "purchase_id",
    "notes",
})


class BatchLedger(BaseService):
    """
    Mutable ledger of inventory batches.

    Contract:
        Receives Session and Clock via constructor injection.  Flushes
        within the caller's transaction; never commits.

    Guarantees:
        - ``find_active_batches`` streams only batches with quantity > 0 and
          status active, ordered by created_at then batch_number.
        - ``upsert_batch`` is race-safe against concurrent receipts of the
          same identity (B1).
        - ``decrement_batch`` and ``adjust_batch`` hold the row lock until
          the caller's transaction ends (L1).

    Non-goals:
        - Does NOT write stock movements (CostingEngine does, in the same
          session).
        - Does NOT retry on contention; retry belongs to the transaction
          boundary.
    """

    # Rows fetched per round trip when streaming active batches
    STREAM_CHUNK = 100

    # Attempts at a synthesized batch number before giving up
    MAX_BATCH_NUMBER_ATTEMPTS = 5

    def __init__(
        self,
        session: Session,
        clock: Clock,
        batch_number_prefix: str = "BATCH",
    ):
        super().__init__(session)
        self._clock = clock
        self._batch_number_prefix = batch_number_prefix

    # =========================================================================
    # Queries
    # =========================================================================

    def find_active_batches(
        self,
        product_id: str,
        warehouse_id: str,
        order: BatchOrder = BatchOrder.OLDEST_FIRST,
    ) -> Iterator[BatchSnapshot]:
        """
        Stream active batches in acquisition order.

        No lock is taken: snapshots are good for quoting only.  The caller
        typically consumes a prefix; closing the iterator early releases
        the underlying cursor.

        Args:
            product_id: Product to query.
            warehouse_id: Warehouse to query.
            order: OLDEST_FIRST for FIFO, NEWEST_FIRST for LIFO.

        Yields:
            BatchSnapshot for each active batch.
        """
        if order == BatchOrder.NEWEST_FIRST:
            ordering = (
                InventoryBatchModel.created_at.desc(),
                InventoryBatchModel.batch_number.desc(),
            )
        else:
            ordering = (
                InventoryBatchModel.created_at.asc(),
                InventoryBatchModel.batch_number.asc(),
            )

        stmt = (
            select(InventoryBatchModel)
            .where(
                InventoryBatchModel.product_id == product_id,
                InventoryBatchModel.warehouse_id == warehouse_id,
                InventoryBatchModel.status == BatchStatus.ACTIVE.value,
            )
            .order_by(*ordering)
            .execution_options(yield_per=self.STREAM_CHUNK, populate_existing=True)
        )

        result = self.session.scalars(stmt)
        try:
            for row in result:
                # quantity is compared here, not in SQL: it is text on SQLite
                if row.quantity > 0:
                    yield self.to_snapshot(row)
        finally:
            result.close()

    def get_batch(self, batch_id: UUID) -> InventoryBatchModel | None:
        """Get a batch by ID without locking."""
        return self.session.get(InventoryBatchModel, batch_id)

    def get_batch_by_identity(
        self,
        product_id: str,
        warehouse_id: str,
        batch_number: str,
    ) -> InventoryBatchModel | None:
        """Get a batch by its (product, warehouse, batch_number) identity."""
        stmt = select(InventoryBatchModel).where(
            InventoryBatchModel.product_id == product_id,
            InventoryBatchModel.warehouse_id == warehouse_id,
            InventoryBatchModel.batch_number == batch_number,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def lock_batch(self, batch_id: UUID) -> InventoryBatchModel:
        """
        Take an exclusive row lock on a batch and return its fresh state.

        Raises:
            BatchNotFoundError: No row with this ID.
            ContentionError: Lock wait timed out.
        """
        with lock_errors_as_contention("lock_batch"):
            batch = self.session.execute(
                select(InventoryBatchModel)
                .where(InventoryBatchModel.id == batch_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

        if batch is None:
            logger.warning("batch_not_found", extra={"batch_id": str(batch_id)})
            raise BatchNotFoundError(str(batch_id))
        return batch

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert_batch(
        self,
        product_id: str,
        warehouse_id: str,
        batch_number: str | None,
        quantity_delta: Decimal | int | str,
        unit_cost: Decimal | int | str,
        metadata: Mapping[str, Any] | None = None,
        acquired_at: datetime | None = None,
    ) -> InventoryBatchModel:
        """
        Merge a receipt into an existing batch or create a new one.

        Preconditions:
            quantity_delta > 0 and unit_cost >= 0.

        Postconditions:
            - Existing identity: quantity increased by quantity_delta,
              unit_cost unchanged (B4), status active.
            - New identity: row inserted with quantity_delta, unit_cost,
              status active, created_at = acquired_at or clock.now().

        Args:
            product_id: Product received.
            warehouse_id: Receiving warehouse.
            batch_number: Lot identifier; synthesized when None.
            quantity_delta: Quantity received.
            unit_cost: Acquisition cost per unit (used only for a new row).
            metadata: Descriptive fields (branch_id, expiry_date, ...);
                unknown keys are stored in batch_metadata.
            acquired_at: Acquisition timestamp override.

        Returns:
            The resulting batch row.

        Raises:
            InvalidQuantityError: Non-positive delta or negative cost.
            ContentionError: Lock wait timed out.
        """
        delta = to_decimal(quantity_delta)
        cost = to_decimal(unit_cost)
        if delta <= 0:
            raise InvalidQuantityError("quantity_delta", format_decimal(delta), "must be positive")
        if cost < 0:
            raise InvalidQuantityError("unit_cost", format_decimal(cost), "must not be negative")

        with lock_errors_as_contention("upsert_batch"):
            if batch_number is None:
                return self._insert_synthesized(
                    product_id, warehouse_id, delta, cost, metadata, acquired_at,
                )

            existing = self._lock_by_identity(product_id, warehouse_id, batch_number)
            if existing is not None:
                return self._merge(existing, delta)

            batch = self._try_insert(
                product_id, warehouse_id, batch_number, delta, cost, metadata, acquired_at,
            )
            if batch is not None:
                return batch

            # Lost the insert race: the row now exists, merge into it
            logger.info("batch_insert_race_merge", extra={
                "product_id": product_id,
                "warehouse_id": warehouse_id,
                "batch_number": batch_number,
            })
            existing = self._lock_by_identity(product_id, warehouse_id, batch_number)
            if existing is None:
                raise ContentionError(
                    "upsert_batch",
                    f"batch {batch_number} conflicted on insert but is not visible",
                )
            return self._merge(existing, delta)

    def decrement_batch(
        self,
        batch_id: UUID,
        quantity: Decimal | int | str,
    ) -> InventoryBatchModel:
        """
        Reduce a batch's quantity under an exclusive row lock.

        Preconditions:
            quantity > 0.

        Postconditions:
            - quantity reduced by the requested amount, clamped at zero when
              the overshoot is within CLAMP_TOLERANCE (B2).
            - status set to depleted when quantity reaches zero (B3).

        Raises:
            BatchNotFoundError: Batch no longer exists.
            InvariantViolationError: Decrement exceeds locked quantity.
            InvalidQuantityError: quantity <= 0.
            ContentionError: Lock wait timed out.
        """
        amount = to_decimal(quantity)
        if amount <= 0:
            raise InvalidQuantityError("quantity", format_decimal(amount), "must be positive")

        batch = self.lock_batch(batch_id)

        remaining = batch.quantity - amount
        if remaining < 0:
            if -remaining > CLAMP_TOLERANCE:
                logger.error("batch_decrement_exceeds_quantity", extra={
                    "batch_id": str(batch_id),
                    "batch_number": batch.batch_number,
                    "requested": format_decimal(amount),
                    "available": format_decimal(batch.quantity),
                })
                raise InvariantViolationError(
                    batch_id=str(batch_id),
                    requested_quantity=format_decimal(amount),
                    available_quantity=format_decimal(batch.quantity),
                )
            remaining = ZERO

        batch.quantity = remaining
        if remaining == 0:
            batch.status = BatchStatus.DEPLETED.value
        batch.updated_at = self._clock.now()

        self.flush("decrement_batch")

        logger.info("batch_decremented", extra={
            "batch_id": str(batch_id),
            "batch_number": batch.batch_number,
            "quantity_taken": format_decimal(amount),
            "remaining": format_decimal(remaining),
            "status": batch.status,
        })
        return batch

    def adjust_batch(
        self,
        batch_id: UUID,
        new_quantity: Decimal | int | str,
    ) -> tuple[InventoryBatchModel, Decimal]:
        """
        Set a batch's quantity explicitly (stock count correction).

        Status follows quantity: zero -> depleted, positive -> active (B3).

        Returns:
            (batch, delta) where delta = new_quantity - previous quantity.

        Raises:
            BatchNotFoundError: Batch no longer exists.
            InvalidQuantityError: new_quantity < 0.
            ContentionError: Lock wait timed out.
        """
        target = to_decimal(new_quantity)
        if target < 0:
            raise InvalidQuantityError("new_quantity", format_decimal(target), "must not be negative")

        batch = self.lock_batch(batch_id)
        previous = batch.quantity
        delta = target - previous

        batch.quantity = target
        batch.status = (
            BatchStatus.ACTIVE.value if target > 0 else BatchStatus.DEPLETED.value
        )
        batch.updated_at = self._clock.now()

        self.flush("adjust_batch")

        logger.info("batch_adjusted", extra={
            "batch_id": str(batch_id),
            "batch_number": batch.batch_number,
            "previous_quantity": format_decimal(previous),
            "new_quantity": format_decimal(target),
            "status": batch.status,
        })
        return batch, delta

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _lock_by_identity(
        self,
        product_id: str,
        warehouse_id: str,
        batch_number: str,
    ) -> InventoryBatchModel | None:
        return self.session.execute(
            select(InventoryBatchModel)
            .where(
                InventoryBatchModel.product_id == product_id,
                InventoryBatchModel.warehouse_id == warehouse_id,
                InventoryBatchModel.batch_number == batch_number,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _merge(self, batch: InventoryBatchModel, delta: Decimal) -> InventoryBatchModel:
        previous_status = batch.status
        batch.quantity = batch.quantity + delta
        if batch.quantity > 0 and batch.status == BatchStatus.DEPLETED.value:
            batch.status = BatchStatus.ACTIVE.value
        batch.updated_at = self._clock.now()
        self.session.flush()

        if previous_status != batch.status:
            logger.info("batch_reactivated", extra={
                "batch_id": str(batch.id),
                "batch_number": batch.batch_number,
            })
        logger.info("batch_merged", extra={
            "batch_id": str(batch.id),
            "batch_number": batch.batch_number,
            "quantity_delta": format_decimal(delta),
            "quantity": format_decimal(batch.quantity),
            "unit_cost": format_decimal(batch.unit_cost),
        })
        return batch

    def _try_insert(
        self,
        product_id: str,
        warehouse_id: str,
        batch_number: str,
        quantity: Decimal,
        unit_cost: Decimal,
        metadata: Mapping[str, Any] | None,
        acquired_at: datetime | None,
    ) -> InventoryBatchModel | None:
        """Insert inside a SAVEPOINT; None if the identity already exists."""
        batch = self._build_batch(
            product_id, warehouse_id, batch_number, quantity, unit_cost, metadata, acquired_at,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(batch)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            return None

        logger.info("batch_created", extra={
            "batch_id": str(batch.id),
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "batch_number": batch_number,
            "quantity": format_decimal(quantity),
            "unit_cost": format_decimal(unit_cost),
        })
        return batch

    def _insert_synthesized(
        self,
        product_id: str,
        warehouse_id: str,
        quantity: Decimal,
        unit_cost: Decimal,
        metadata: Mapping[str, Any] | None,
        acquired_at: datetime | None,
    ) -> InventoryBatchModel:
        for attempt in range(self.MAX_BATCH_NUMBER_ATTEMPTS):
            batch_number = self.synthesize_batch_number()
            batch = self._try_insert(
                product_id, warehouse_id, batch_number, quantity, unit_cost, metadata, acquired_at,
            )
            if batch is not None:
                return batch
            logger.warning("batch_number_collision", extra={
                "batch_number": batch_number,
                "attempt": attempt + 1,
            })
        raise ContentionError(
            "upsert_batch",
            f"no unique batch number after {self.MAX_BATCH_NUMBER_ATTEMPTS} attempts",
        )

    def synthesize_batch_number(self) -> str:
        """Date-stamped batch number with a random uniqueness suffix."""
        stamp = self._clock.now().strftime("%Y%m%d")
        return f"{self._batch_number_prefix}-{stamp}-{uuid4().hex[:12]}"

    def _build_batch(
        self,
        product_id: str,
        warehouse_id: str,
        batch_number: str,
        quantity: Decimal,
        unit_cost: Decimal,
        metadata: Mapping[str, Any] | None,
        acquired_at: datetime | None,
    ) -> InventoryBatchModel:
        descriptive: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in (metadata or {}).items():
            if key in _DESCRIPTIVE_FIELDS:
                descriptive[key] = value
            else:
                extra[key] = value

        return InventoryBatchModel(
            id=uuid4(),
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch_number=batch_number,
            quantity=quantity,
            unit_cost=unit_cost,
            status=BatchStatus.ACTIVE.value,
            created_at=acquired_at or self._clock.now(),
            batch_metadata=extra or None,
            **descriptive,
        )

    @staticmethod
    def to_snapshot(row: InventoryBatchModel) -> BatchSnapshot:
        """Convert an InventoryBatchModel row to a BatchSnapshot."""
        return BatchSnapshot(
            batch_id=row.id,
            product_id=row.product_id,
            warehouse_id=row.warehouse_id,
            batch_number=row.batch_number,
            quantity=row.quantity,
            unit_cost=row.unit_cost,
            status=BatchStatus(row.status),
            created_at=row.created_at,
            expiry_date=row.expiry_date,
        )
