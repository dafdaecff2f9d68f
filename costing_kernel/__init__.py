"""
Costing Kernel

Batch ledger and persistence core for inventory costing:
- Lot (batch) storage keyed by product, warehouse and batch number
- Row-locked quantity decrements with depletion tracking
- Stock movement audit records
- Structured logging and typed exceptions
"""

__version__ = "0.1.0"
