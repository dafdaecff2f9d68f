"""
Module: costing_kernel.selectors.product_selector
Responsibility: Read product costing configuration (cost method, standard
    cost) as ProductCosting value objects.
Architecture position: Kernel > Selectors.  Read-only; see BaseSelector.

Failure modes:
    - ProductNotFoundError when no configuration row exists.
"""

from __future__ import annotations

from sqlalchemy import select

from costing_kernel.domain.dtos import ProductCosting
from costing_kernel.exceptions import ProductNotFoundError
from costing_kernel.models.product_costing import ProductCostingModel
from costing_kernel.selectors.base import BaseSelector


class ProductCostingSelector(BaseSelector):
    """Lookup of per-product costing configuration."""

    def get(self, product_id: str) -> ProductCosting:
        row = self.session.execute(
            select(ProductCostingModel).where(
                ProductCostingModel.product_id == product_id
            )
        ).scalar_one_or_none()

        if row is None:
            raise ProductNotFoundError(product_id)

        # cost_method is passed through raw; resolution happens at valuation
        return ProductCosting(
            product_id=row.product_id,
            cost_method=row.cost_method,
            standard_cost=row.standard_cost,
        )
