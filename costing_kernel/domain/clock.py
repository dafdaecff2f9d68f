"""
Clock -- injectable source of "now" for batch timestamps.

Responsibility:
    Batch ``created_at`` decides FIFO/LIFO order, and movement and
    ``updated_at`` stamps form the audit trail, so no ledger or engine code
    reads the wall clock directly.  Services receive a Clock instead.

Architecture position:
    Kernel > Domain -- zero I/O apart from SystemClock.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Receipts recorded between two ``advance()`` calls share a timestamp and
    fall back to batch_number for ordering.  Safe to share across threads.
    """

    def __init__(self, start: datetime | None = None):
        self._current = start or DEFAULT_TEST_EPOCH
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, step: timedelta | int | float = 1) -> datetime:
        """Move forward by ``step`` (a timedelta or seconds) and return the new time."""
        if not isinstance(step, timedelta):
            step = timedelta(seconds=step)
        if step < timedelta(0):
            raise ValueError("DeterministicClock cannot move backwards")
        with self._lock:
            self._current += step
            return self._current

    def set_time(self, moment: datetime) -> None:
        with self._lock:
            self._current = moment
