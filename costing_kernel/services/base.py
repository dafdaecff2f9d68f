"""
BaseService -- common base for kernel write services.

Services receive the caller's Session and only ever flush it.  They may
open SAVEPOINTs (``session.begin_nested()``) to make a group of row changes
all-or-nothing, but committing or rolling back the outer transaction is
the caller's job.
"""

from abc import ABC

from sqlalchemy.orm import Session

from costing_kernel.db.locking import lock_errors_as_contention


class BaseService(ABC):
    """Holds the injected session; never commits it."""

    def __init__(self, session: Session):
        self.session = session

    def flush(self, operation: str) -> None:
        """Flush pending changes, reporting lock waits as ContentionError."""
        with lock_errors_as_contention(operation):
            self.session.flush()
