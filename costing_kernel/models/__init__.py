"""ORM models for the costing kernel."""

from costing_kernel.models.consumption_record import ConsumptionRecordModel
from costing_kernel.models.inventory_batch import InventoryBatchModel
from costing_kernel.models.product_costing import ProductCostingModel
from costing_kernel.models.stock_movement import StockMovementModel

__all__ = [
    "ConsumptionRecordModel",
    "InventoryBatchModel",
    "ProductCostingModel",
    "StockMovementModel",
]
