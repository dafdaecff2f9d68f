"""Services for the costing kernel (write side)."""

from costing_kernel.services.base import BaseService
from costing_kernel.services.batch_ledger import BatchLedger

__all__ = [
    "BaseService",
    "BatchLedger",
]
