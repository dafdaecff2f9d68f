"""
Retry helper for transaction-level concurrency failures.

Responsibility:
    Re-run a whole unit of work when it fails with a retryable costing
    error (lock contention, stale allocation), with exponential backoff.

Architecture position:
    Services -- used at the transaction boundary (ConsumptionService).
    The kernel and the costing engine never retry.

Invariants enforced:
    - ``func`` is called at most ``attempts`` times.
    - Only exceptions in ``retry_on`` are retried; anything else
      propagates on the first occurrence.
    - When attempts are exhausted the LAST error is re-raised unchanged.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from costing_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")


def run_with_retry(
    func: Callable[[int], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func(attempt)`` until it succeeds or attempts run out.

    Args:
        func: Unit of work; receives the 1-based attempt number.  It must
            leave no partial state behind when it raises (open and close
            its own transaction).
        attempts: Maximum number of calls (>= 1).
        backoff_base: Delay before the second attempt; doubles afterwards.
        retry_on: Exception types that trigger another attempt.
        sleep: Delay function (injected by tests).

    Returns:
        Whatever ``func`` returns.

    Raises:
        ValueError: attempts < 1.
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    for attempt in range(1, attempts + 1):
        try:
            return func(attempt)
        except retry_on as exc:
            if attempt >= attempts:
                logger.error("retry_exhausted", extra={
                    "attempts": attempts,
                    "error_type": type(exc).__name__,
                    "error_code": getattr(exc, "code", None),
                })
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            logger.warning("retry_scheduled", extra={
                "attempt": attempt,
                "next_attempt": attempt + 1,
                "delay_seconds": delay,
                "error_type": type(exc).__name__,
                "error_code": getattr(exc, "code", None),
            })
            if delay > 0:
                sleep(delay)

    # Unreachable: the loop either returns or raises
    raise AssertionError("run_with_retry loop exited without result")
