"""
costing_services -- stateful orchestration over the costing kernel.

CostingEngine applies the pure valuators in costing_engines to the batch
ledger; ConsumptionService owns the transaction boundary and retry.
"""

from costing_services.consumption_service import (
    ConsumptionOutcome,
    ConsumptionService,
    ConsumptionStatus,
)
from costing_services.costing_engine import CostingEngine
from costing_services.retry import run_with_retry

__all__ = [
    "ConsumptionOutcome",
    "ConsumptionService",
    "ConsumptionStatus",
    "CostingEngine",
    "run_with_retry",
]
