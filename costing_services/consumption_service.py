"""
ConsumptionService -- cost and consume stock for a business reference.

Responsibility:
    Drive the two-phase costing protocol end to end for one consumption
    (a sale line, a production issue): duplicate detection, stock
    sufficiency, valuation, commit against the ledger and outbound stock
    movements, all in one transaction per attempt.

Architecture position:
    Services -- owns the transaction boundary.  Opens one session per
    attempt through the injected session factory and retries the whole
    attempt on retryable concurrency failures.

Invariants enforced:
    - Serialized per stock.  Each attempt first takes the (product,
      warehouse) stock lock, so the duplicate check, the stock check and
      the commit run without another consumer of the same stock between
      them.
    - Once per reference.  The attempt claims a consumption_records row
      unique on (reference_type, reference_id, product, warehouse) before
      touching stock.  An existing row makes the call a no-op returning
      ALREADY_CONSUMED.
    - No silent overdraw.  Unless allow_negative_stock is set, stock
      below the requested quantity (on the stock layer) or a FIFO/LIFO
      shortfall raises InsufficientStockError and nothing is written.
    - Retry at the boundary only.  ContentionError and
      StaleAllocationError re-run valuate + commit in a fresh transaction
      with exponential backoff; the engine itself never retries.

Failure modes:
    - InsufficientStockError: stock does not cover the request.
    - ContentionError / StaleAllocationError: retries exhausted (the last
      error is re-raised).
    - InvalidQuantityError: quantity <= 0.

Audit relevance:
    consumption_completed carries the reference, method, quantity and
    total cost; the movements written per batch tie the reference to the
    lots that costed it.

Usage:
    service = ConsumptionService(session_factory, clock, config)
    outcome = service.consume(product, "WH-1", Decimal("3"), "sale", "INV-42")
    if outcome.status == ConsumptionStatus.CONSUMED:
        cogs = outcome.allocation.total_cost
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from costing_config.schema import CostingConfig
from costing_engines.valuation import CostAllocationResult
from costing_engines.valuation.allocation import CostedProduct
from costing_kernel.db.engine import session_scope
from costing_kernel.db.locking import acquire_stock_lock, lock_errors_as_contention
from costing_kernel.db.types import format_decimal, to_decimal
from costing_kernel.domain.clock import Clock
from costing_kernel.exceptions import (
    ContentionError,
    InsufficientStockError,
    InvalidQuantityError,
    StaleAllocationError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.consumption_record import ConsumptionRecordModel
from costing_kernel.selectors.stock_selector import StockLevelProvider, StockSelector
from costing_services.costing_engine import CostingEngine
from costing_services.retry import run_with_retry

logger = get_logger("services.consumption")

RETRYABLE_ERRORS = (ContentionError, StaleAllocationError)


class ConsumptionStatus(str, Enum):
    """Outcome of a consumption request."""

    CONSUMED = "consumed"
    ALREADY_CONSUMED = "already_consumed"


@dataclass(frozen=True)
class ConsumptionOutcome:
    """Result of ConsumptionService.consume()."""

    status: ConsumptionStatus
    allocation: CostAllocationResult | None
    attempts: int

    @property
    def total_cost(self) -> Decimal:
        if self.allocation is None:
            return Decimal("0")
        return self.allocation.total_cost


class ConsumptionService:
    """
    Transactional consumption of stock with cost allocation.

    Contract:
        Receives a session factory, Clock and CostingConfig.  Each attempt
        commits or rolls back its own session; callers must not hold an
        open transaction on the same rows.

    Non-goals:
        - Does NOT post accounting entries for COGS.
        - Does NOT reserve stock ahead of consumption.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock,
        config: CostingConfig | None = None,
        stock_provider: Callable[[Session], StockLevelProvider] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._config = config or CostingConfig()
        self._stock_provider = stock_provider or StockSelector
        self._sleep = sleep

    def consume(
        self,
        product: CostedProduct,
        warehouse_id: str,
        quantity: Decimal | int | str,
        reference_type: str,
        reference_id: str,
    ) -> ConsumptionOutcome:
        """
        Consume ``quantity`` of ``product`` at ``warehouse_id`` for a reference.

        Args:
            product: Object exposing product_id, cost_method, standard_cost.
            warehouse_id: Warehouse the stock leaves.
            quantity: Quantity consumed (> 0).
            reference_type: Kind of business document (e.g. "sale").
            reference_id: Identifier of the business document line.

        Returns:
            ConsumptionOutcome with the committed allocation, or
            ALREADY_CONSUMED (allocation None) for a repeated reference.

        Raises:
            InvalidQuantityError: quantity <= 0.
            InsufficientStockError: Stock does not cover the request.
            ContentionError / StaleAllocationError: Retries exhausted.
        """
        qty = to_decimal(quantity)
        if qty <= 0:
            raise InvalidQuantityError("quantity", format_decimal(qty), "must be positive")

        def attempt(number: int) -> ConsumptionOutcome:
            with lock_errors_as_contention("consume"):
                with session_scope(self._session_factory) as session:
                    return self._consume_once(
                        session, product, warehouse_id, qty,
                        reference_type, reference_id, number,
                    )

        retry_kwargs = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        with LogContext.bind(
            reference_id=reference_id,
            product_id=product.product_id,
            warehouse_id=warehouse_id,
        ):
            return run_with_retry(
                attempt,
                attempts=self._config.max_commit_attempts,
                backoff_base=self._config.retry_backoff_seconds,
                retry_on=RETRYABLE_ERRORS,
                **retry_kwargs,
            )

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _consume_once(
        self,
        session: Session,
        product: CostedProduct,
        warehouse_id: str,
        quantity: Decimal,
        reference_type: str,
        reference_id: str,
        attempt: int,
    ) -> ConsumptionOutcome:
        product_id = product.product_id

        # Held until commit: the stock check below stays true through commit()
        acquire_stock_lock(session, product_id, warehouse_id)

        record = self._claim_reference(
            session, product_id, warehouse_id, quantity, reference_type, reference_id,
        )
        if record is None:
            logger.info("consumption_duplicate_skipped", extra={
                "reference_type": reference_type,
                "attempt": attempt,
            })
            return ConsumptionOutcome(
                status=ConsumptionStatus.ALREADY_CONSUMED,
                allocation=None,
                attempts=attempt,
            )

        allow_negative = self._config.allow_negative_stock
        if not allow_negative:
            on_hand = self._stock_provider(session).on_hand(product_id, warehouse_id)
            if on_hand < quantity:
                logger.warning("consumption_blocked_insufficient_stock", extra={
                    "requested": format_decimal(quantity),
                    "on_hand": format_decimal(on_hand),
                })
                raise InsufficientStockError(
                    product_id=product_id,
                    warehouse_id=warehouse_id,
                    requested_quantity=format_decimal(quantity),
                    available_quantity=format_decimal(on_hand),
                )

        engine = CostingEngine(session, self._clock, self._config)
        allocation = engine.valuate(product, warehouse_id, quantity)

        if allocation.has_shortfall and not allow_negative:
            logger.warning("consumption_blocked_shortfall", extra={
                "cost_method": allocation.cost_method.value,
                "requested": format_decimal(quantity),
                "allocated": format_decimal(allocation.allocated_quantity),
            })
            raise InsufficientStockError(
                product_id=product_id,
                warehouse_id=warehouse_id,
                requested_quantity=format_decimal(quantity),
                available_quantity=format_decimal(allocation.allocated_quantity),
            )

        engine.commit(allocation)
        engine.record_consumption(allocation, reference_type, reference_id)

        record.total_cost = allocation.total_cost
        record.cost_method = allocation.cost_method.value
        with lock_errors_as_contention("consume"):
            session.flush()

        logger.info("consumption_completed", extra={
            "reference_type": reference_type,
            "cost_method": allocation.cost_method.value,
            "quantity": format_decimal(quantity),
            "unit_cost": format_decimal(allocation.unit_cost),
            "total_cost": format_decimal(allocation.total_cost),
            "attempt": attempt,
        })
        return ConsumptionOutcome(
            status=ConsumptionStatus.CONSUMED,
            allocation=allocation,
            attempts=attempt,
        )

    def _claim_reference(
        self,
        session: Session,
        product_id: str,
        warehouse_id: str,
        quantity: Decimal,
        reference_type: str,
        reference_id: str,
    ) -> ConsumptionRecordModel | None:
        """Insert the reference's record inside a SAVEPOINT; None if it already exists."""
        record = ConsumptionRecordModel(
            reference_type=reference_type,
            reference_id=reference_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            created_at=self._clock.now(),
        )
        savepoint = session.begin_nested()
        try:
            session.add(record)
            session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            return None
        return record
