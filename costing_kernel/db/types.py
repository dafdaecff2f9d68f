"""
Module: costing_kernel.db.types
Responsibility: Column types, annotated aliases and decimal helpers for
    cost and quantity columns.  Centralizes precision and rounding so that
    every model, engine and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, engines,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in costing arithmetic.  to_decimal() rejects float
      input outright; callers pass Decimal, int or str.
    - Cost and quantity columns round-trip exactly at storage scale on every
      dialect.  PostgreSQL stores NUMERIC(38, 9); dialects without a native
      decimal (SQLite) store the fixed-point text, so no value ever passes
      through a binary float.
    - round_cost() is the ONLY sanctioned rounding function for cost values
      (ROUND_HALF_UP).

Failure modes:
    - TypeError from to_decimal() on float or unsupported input.
    - decimal.InvalidOperation from to_decimal() on a non-numeric string.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator


# Storage scale for cost and quantity columns
COST_DECIMAL_PLACES = 9

# Default reporting precision for unit cost on allocation results
UNIT_COST_DECIMAL_PLACES = 6

DEFAULT_ROUNDING = ROUND_HALF_UP

# One unit at storage scale; decrements overshooting by at most this clamp to zero
CLAMP_TOLERANCE = Decimal("0.000000001")

ZERO = Decimal("0")

# Dialects whose driver hands back Decimal for NUMERIC columns
NATIVE_DECIMAL_DIALECTS = frozenset({"postgresql"})


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Coerce a quantity or cost input to Decimal.

    Preconditions: value is a Decimal, int or numeric string.
    Postconditions: Returns an equal Decimal (not rounded).

    Raises:
        TypeError: If value is a float (binary floating point is never
            accepted for cost or quantity) or any other unsupported type.
    """
    if isinstance(value, bool):
        raise TypeError(f"Boolean is not a valid decimal amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError(
            f"Float values are not accepted for costing amounts: {value!r}; "
            "pass Decimal or str"
        )
    if isinstance(value, (int, str)):
        return Decimal(str(value).strip() if isinstance(value, str) else value)
    raise TypeError(f"Unsupported amount type: {type(value).__name__}")


def round_cost(
    value: Decimal,
    decimal_places: int = COST_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a cost value to the given number of decimal places.

    This is the ONLY sanctioned rounding function for cost values.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.
    """
    exponent = Decimal(1).scaleb(-decimal_places)
    return value.quantize(exponent, rounding=rounding)


def format_decimal(value: Decimal) -> str:
    """Fixed-point string for logs and error payloads (no scientific notation)."""
    return format(value.normalize(), "f")


class ExactDecimal(TypeDecorator):
    """
    Cost/quantity column: NUMERIC(38, 9) on PostgreSQL, fixed-point text elsewhere.

    Bound values are rounded to storage scale before they reach the driver,
    so the stored text always has exactly nine decimal places.  SQL
    comparisons against this column are only numeric on PostgreSQL; code
    that must run on SQLite filters and sums in Python.
    """

    impl = String(50)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name in NATIVE_DECIMAL_DIALECTS:
            return dialect.type_descriptor(Numeric(38, COST_DECIMAL_PLACES, asdecimal=True))
        return dialect.type_descriptor(String(50))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        stored = round_cost(to_decimal(value))
        if dialect.name in NATIVE_DECIMAL_DIALECTS:
            return stored
        return format(stored, "f")

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))


# Cost per unit / line cost: 38 digits total, 9 decimal places
Cost = Annotated[Decimal, ExactDecimal()]

# Stock quantity: same storage precision as cost
Qty = Annotated[Decimal, ExactDecimal()]

# Product, warehouse and branch identifiers
Identifier = Annotated[str, String(100)]
