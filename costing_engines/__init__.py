"""
Module: costing_engines
Responsibility:
    Package entrypoint for the pure calculation layer of inventory
    costing.  Higher layers (costing_services) import from here.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import costing_kernel.domain, costing_kernel.db.types,
    costing_kernel.exceptions and costing_kernel.logging_config.
    MUST NOT import costing_services or touch a Session.

Invariants enforced:
    - Purity: engines never read the clock or the database.  Batches are
      supplied through an injected query callable.
    - Decimal-only arithmetic; floats are rejected at the boundary.
    - Determinism: identical inputs produce identical outputs.

Audit relevance:
    Every valuator invocation emits a COSTING_ENGINE_TRACE record (see
    ``costing_engines.tracer``) with an input fingerprint and duration.

Usage:
    from costing_engines.valuation import CostMethod, allocate
"""

from costing_engines.tracer import traced_engine
from costing_engines.valuation import (
    BatchAllocation,
    CostAllocationResult,
    CostMethod,
    allocate,
)

__all__ = [
    "BatchAllocation",
    "CostAllocationResult",
    "CostMethod",
    "allocate",
    "traced_engine",
]
