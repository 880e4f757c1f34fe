"""
Order Aggregate Builder
=======================
Freezes a resolved cart into a new ``pending`` order.

Stock is reserved with an all-or-nothing conditional decrement before the
order is written; if the write fails the reservation is given back, so an
order never exists without its stock and stock is never held without an
order.
"""

from typing import Any, Dict, Optional

import structlog

from schemas.order_definitions import Buyer, Order, OrderStatus, ResolvedCart
from pipeline.errors import InvalidAmount
from storage.repositories import ICustomerStore, IOrderRepository, IProductStore

logger = structlog.get_logger().bind(component="order_builder")


class OrderAggregateBuilder:

    def __init__(
        self,
        products: IProductStore,
        orders: IOrderRepository,
        customers: ICustomerStore,
        currency: str = "INR",
    ):
        self.products = products
        self.orders = orders
        self.customers = customers
        self.currency = currency

    async def _link_customer(self, customer_ref: Optional[str]) -> Optional[str]:
        """Weak reference: keep it only if the customer exists."""
        if not customer_ref:
            return None
        if await self.customers.exists(customer_ref):
            return customer_ref
        logger.info("customer_ref_dropped", customer_ref=customer_ref, reason="unknown_customer")
        return None

    async def build(
        self,
        buyer: Buyer,
        resolved: ResolvedCart,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Order:
        if resolved.amount <= 0:
            raise InvalidAmount("Amount must be positive")

        order = Order(
            order_id=Order.generate_order_id(),
            buyer=buyer,
            customer_ref=await self._link_customer(customer_ref),
            line_items=resolved.line_items,
            amount=resolved.amount,
            currency=self.currency,
            status=OrderStatus.PENDING,
            stock_reserved=True,
            metadata=dict(metadata or {}),
        )

        quantities = resolved.quantities()
        await self.products.reserve(quantities)
        try:
            await self.orders.insert(order)
        except Exception:
            await self.products.release(quantities)
            logger.error("order_insert_failed", order_id=order.order_id, exc_info=True)
            raise

        logger.info(
            "order_created",
            order_id=order.order_id,
            correlation_id=order.correlation_id,
            amount=order.amount,
            currency=order.currency,
            line_count=len(order.line_items),
        )
        return order
