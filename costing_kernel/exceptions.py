"""
Typed Exception Hierarchy for the Costing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Costing errors feed directly into COGS and stock decisions. Callers must be
able to tell a retryable lock conflict from a caller bug (committing more
than was quoted) without parsing message strings.

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (batch ids, quantities)

Example - WRONG way to handle errors:
    try:
        engine.commit(allocation)
    except Exception as e:
        if "locked" in str(e):  # FRAGILE
            retry()

Example - RIGHT way:
    try:
        engine.commit(allocation)
    except ContentionError:
        retry_whole_cycle()
    except StaleAllocationError as e:
        requote(e.batch_id, e.available_quantity)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from CostingKernelError:

    CostingKernelError (base)
    |
    +-- CostMethodError
    |   +-- InvalidMethodError
    |
    +-- NotFoundError
    |   +-- BatchNotFoundError
    |   +-- ProductNotFoundError
    |
    +-- BatchError
    |   +-- InvariantViolationError
    |   |   +-- StaleAllocationError
    |   +-- InvalidQuantityError
    |
    +-- ConcurrencyError
    |   +-- ContentionError
    |
    +-- StockError
        +-- InsufficientStockError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Cost method     | INVALID_COST_METHOD         | Malformed cost method configuration value
----------------|-----------------------------|-----------------------------------------
Not found       | BATCH_NOT_FOUND             | Batch row vanished before decrement
                | PRODUCT_NOT_FOUND           | No costing config for product
----------------|-----------------------------|-----------------------------------------
Batch           | INVARIANT_VIOLATION         | Decrement would drive quantity negative
                | STALE_ALLOCATION            | Locked quantity below quoted allocation
                | INVALID_QUANTITY            | Non-positive delta, negative cost/target
----------------|-----------------------------|-----------------------------------------
Concurrency     | LOCK_CONTENTION             | Lock wait timeout / deadlock (retryable)
----------------|-----------------------------|-----------------------------------------
Stock           | INSUFFICIENT_STOCK          | Consumption blocked by shortfall

===============================================================================
HANDLING PATTERNS
===============================================================================

1. RETRY ONLY WHAT IS RETRYABLE:

    except ConcurrencyError as e:
        if e.retryable:
            rerun_valuate_and_commit()

2. STALE QUOTES ARE NOT BUGS:

    StaleAllocationError means another consumer drained a quoted batch
    between valuate() and commit().  Re-quote; do not force the commit.

3. INVARIANT VIOLATIONS ARE BUGS:

    A bare InvariantViolationError from decrement_batch() means the caller
    asked for more than the row holds.  Fail the business operation.
"""


class CostingKernelError(Exception):
    """
    Base exception for all costing kernel errors.

    All subclasses must have a `code` class attribute for
    machine-readable error identification.
    """

    code: str = "COSTING_KERNEL_ERROR"


# Cost method exceptions


class CostMethodError(CostingKernelError):
    """Base exception for cost method configuration errors."""

    code: str = "COST_METHOD_ERROR"


class InvalidMethodError(CostMethodError):
    """Cost method value is malformed."""

    code: str = "INVALID_COST_METHOD"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid cost method: {value!r}")


# Lookup exceptions


class NotFoundError(CostingKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class BatchNotFoundError(NotFoundError):
    """Batch with given ID no longer exists."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class ProductNotFoundError(NotFoundError):
    """No costing configuration exists for the product."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product costing not found: {product_id}")


# Batch exceptions


class BatchError(CostingKernelError):
    """Base exception for batch ledger errors."""

    code: str = "BATCH_ERROR"


class InvariantViolationError(BatchError):
    """A decrement would drive batch quantity below zero."""

    code: str = "INVARIANT_VIOLATION"

    def __init__(
        self,
        batch_id: str,
        requested_quantity: str,
        available_quantity: str,
        message: str | None = None,
    ):
        self.batch_id = batch_id
        self.requested_quantity = requested_quantity
        self.available_quantity = available_quantity
        super().__init__(
            message
            or (
                f"Decrement of {requested_quantity} on batch {batch_id} "
                f"exceeds available quantity {available_quantity}"
            )
        )


class StaleAllocationError(InvariantViolationError):
    """Quoted allocation no longer fits the locked batch quantity."""

    code: str = "STALE_ALLOCATION"

    def __init__(
        self,
        batch_id: str,
        requested_quantity: str,
        available_quantity: str,
    ):
        super().__init__(
            batch_id,
            requested_quantity,
            available_quantity,
            message=(
                f"Allocation for batch {batch_id} is stale: quoted "
                f"{requested_quantity}, locked quantity is {available_quantity}"
            ),
        )


class InvalidQuantityError(BatchError):
    """Quantity or cost argument outside its allowed range."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: str, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value}: {reason}")


# Concurrency exceptions


class ConcurrencyError(CostingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = False


class ContentionError(ConcurrencyError):
    """Lock wait timed out or the store aborted on deadlock."""

    code: str = "LOCK_CONTENTION"
    retryable: bool = True

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(
            f"Lock contention during {operation}: {detail}"
        )


# Stock exceptions


class StockError(CostingKernelError):
    """Base exception for stock sufficiency errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """Consumption cannot be fully covered by available stock."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: str,
        warehouse_id: str,
        requested_quantity: str,
        available_quantity: str,
    ):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.requested_quantity = requested_quantity
        self.available_quantity = available_quantity
        super().__init__(
            f"Insufficient stock for product {product_id} at {warehouse_id}: "
            f"requested {requested_quantity}, available {available_quantity}"
        )
