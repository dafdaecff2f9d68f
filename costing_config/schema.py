"""
CostingConfig schema.

Typed, frozen view of the costing configuration.  YAML files are parsed
into this by the loader; services receive it by constructor injection
and never read files or environment variables themselves.
"""

from __future__ import annotations

from dataclasses import dataclass

from costing_engines.valuation.cost_method import CostMethod


@dataclass(frozen=True)
class CostingConfig:
    """Runtime configuration for the costing engine and its store."""

    # Persistence
    database_url: str = "sqlite:///costing.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    lock_timeout_ms: int = 5000

    # Valuation
    unit_cost_decimal_places: int = 6
    default_cost_method: CostMethod = CostMethod.WEIGHTED_AVERAGE
    batch_number_prefix: str = "BATCH"

    # Consumption
    allow_negative_stock: bool = False
    max_commit_attempts: int = 3
    retry_backoff_seconds: float = 0.05
