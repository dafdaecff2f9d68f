"""
costing_engines.tracer -- COSTING_ENGINE_TRACE records for valuator calls.

Responsibility:
    ``@traced_engine`` wraps a pure valuator so every quote leaves one
    structured record: which valuator ran, at what version, over which
    inputs (as a short fingerprint), and what it produced (method, total,
    shortfall).  Two quotes with the same fingerprint and different totals
    mean the batch ledger changed in between.

Architecture position:
    Engines -- logging only; the wrapped function stays free of I/O.

Invariants enforced:
    - The fingerprint depends only on the named arguments, bound by
      signature so positional and keyword calls hash alike.
    - Decimals hash by value (``Decimal("5")`` and ``Decimal("5.00")`` agree).
    - A product hashes by its product_id, cost_method and standard_cost.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import logging
import time
from collections.abc import Callable
from decimal import Decimal
from enum import Enum
from typing import Any

_logger = logging.getLogger("costing_kernel.engines.tracer")

FINGERPRINT_LENGTH = 16

_PRODUCT_ATTRS = ("product_id", "cost_method", "standard_cost")


def _canonical(value: Any) -> str:
    if value is None:
        return "~"
    if isinstance(value, Enum):
        return _canonical(value.value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, (str, int)):
        return str(value)
    if all(hasattr(value, attr) for attr in _PRODUCT_ATTRS):
        return ";".join(
            f"{attr}={_canonical(getattr(value, attr))}" for attr in _PRODUCT_ATTRS
        )
    return repr(value)


def compute_input_fingerprint(fields: tuple[str, ...], arguments: dict[str, Any]) -> str:
    """Short SHA-256 over ``name=value`` pairs of the selected arguments."""
    canonical = "|".join(f"{name}={_canonical(arguments.get(name))}" for name in fields)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def _result_summary(result: Any) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    for attr in ("cost_method", "total_cost", "shortfall"):
        value = getattr(result, attr, None)
        if value is not None:
            summary[attr] = _canonical(value)
    return summary


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorate a valuator so each call logs COSTING_ENGINE_TRACE.

    Args:
        engine_name: Valuator identifier, e.g. "valuation.fifo".
        engine_version: Bumped whenever the valuator's arithmetic changes.
        fingerprint_fields: Parameter names hashed into input_fingerprint.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.perf_counter()
            result = func(*args, **kwargs)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

            _logger.info(
                "COSTING_ENGINE_TRACE",
                extra={
                    "trace_type": "COSTING_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fingerprint,
                    "duration_ms": elapsed_ms,
                    **_result_summary(result),
                },
            )
            return result

        return wrapper

    return decorator
