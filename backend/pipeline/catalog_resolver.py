"""
Catalog Snapshot Resolver
=========================
Turns ``[(product_id, quantity)]`` into priced line items using the
catalog's current title and price.

Read-only: it checks stock but reserves nothing. Two concurrent checkouts can
both pass this check for the last unit; the builder's atomic reservation is
what settles that race.
"""

from typing import Dict, Sequence

import structlog

from schemas.order_definitions import CartItem, LineItem, ResolvedCart
from pipeline.errors import InsufficientStock, ProductUnavailable
from storage.repositories import IProductStore

logger = structlog.get_logger().bind(component="catalog_resolver")


class CatalogSnapshotResolver:

    def __init__(self, products: IProductStore):
        self.products = products

    async def resolve(self, items: Sequence[CartItem]) -> ResolvedCart:
        """Resolve every item or fail the whole batch."""
        if not items:
            raise ValueError("At least one item is required")

        catalog = await self.products.get_many({item.product_id for item in items})

        requested: Dict[str, int] = {}
        for item in items:
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

        line_items = []
        for item in items:
            product = catalog.get(item.product_id)
            if product is None or not product.active:
                logger.info("product_unavailable", product_id=item.product_id)
                raise ProductUnavailable(item.product_id)
            if requested[item.product_id] > product.stock:
                logger.info(
                    "insufficient_stock",
                    product_id=product.product_id,
                    requested=requested[item.product_id],
                    stock=product.stock,
                )
                raise InsufficientStock(product.product_id, product.title, product.stock)

            line_items.append(LineItem(
                product_id=product.product_id,
                title=product.title,
                unit_price=product.price,
                quantity=item.quantity,
            ))

        amount = sum(line.line_total for line in line_items)
        return ResolvedCart(line_items=line_items, amount=amount)
