"""Selectors for the costing kernel (read side)."""

from costing_kernel.selectors.base import BaseSelector
from costing_kernel.selectors.product_selector import ProductCostingSelector
from costing_kernel.selectors.stock_selector import StockLevelProvider, StockSelector

__all__ = [
    "BaseSelector",
    "ProductCostingSelector",
    "StockLevelProvider",
    "StockSelector",
]
