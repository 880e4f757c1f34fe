"""
Tests for operator overrides and deletion rules.
"""

import pytest

from pipeline.errors import IllegalDeletion, OrderNotFound
from schemas.order_definitions import LineItem, Order, OrderStatus
from services.audit import AuditEventType

from conftest import stock_of


def make_order(buyer, status: OrderStatus) -> Order:
    return Order(
        order_id=Order.generate_order_id(),
        buyer=buyer,
        line_items=[LineItem(product_id="lavender", title="Lavender Candle", unit_price=500, quantity=1)],
        amount=500,
        status=status,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [OrderStatus.PAID, OrderStatus.CAPTURED, OrderStatus.CANCELLED])
async def test_delete_refused_for_settled_orders(pipeline, orders, buyer, status):
    order = await orders.insert(make_order(buyer, status))

    with pytest.raises(IllegalDeletion) as exc_info:
        await pipeline.admin.delete(order.order_id, operator="ops")

    assert exc_info.value.message == "Can only delete pending or failed orders"
    assert await orders.get(order.order_id) is not None


@pytest.mark.asyncio
async def test_delete_refused_while_awaiting_payment_setup(pipeline, orders, buyer):
    order = await orders.insert(make_order(buyer, OrderStatus.AWAITING_PAYMENT_SETUP))

    with pytest.raises(IllegalDeletion):
        await pipeline.admin.delete(order.order_id, operator="ops")


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.FAILED])
async def test_delete_allowed_for_pending_and_failed(pipeline, orders, buyer, status):
    order = await orders.insert(make_order(buyer, status))

    deleted = await pipeline.admin.delete(order.order_id, operator="ops")

    assert deleted.order_id == order.order_id
    assert await orders.get(order.order_id) is None


@pytest.mark.asyncio
async def test_deleting_pending_order_returns_its_stock(pipeline, products, buyer, two_candles):
    checkout = await pipeline.create_order(buyer, two_candles)
    assert await stock_of(products, "lavender") == 8

    await pipeline.delete_order(checkout.order_id, operator="ops")

    assert await stock_of(products, "lavender") == 10


@pytest.mark.asyncio
async def test_deleting_failed_order_does_not_return_stock_twice(pipeline, products, buyer, two_candles):
    checkout = await pipeline.create_order(buyer, two_candles)
    await pipeline.set_status(checkout.order_id, OrderStatus.FAILED, operator="ops")
    assert await stock_of(products, "lavender") == 10

    await pipeline.delete_order(checkout.order_id, operator="ops")

    assert await stock_of(products, "lavender") == 10


@pytest.mark.asyncio
async def test_delete_unknown_order(pipeline):
    with pytest.raises(OrderNotFound):
        await pipeline.delete_order("ORD-NOPE", operator="ops")


@pytest.mark.asyncio
async def test_deletion_is_audited(pipeline, audit_log, buyer, two_candles):
    checkout = await pipeline.create_order(buyer, two_candles)

    await pipeline.delete_order(checkout.order_id, operator="ops-2")

    trail = await audit_log.get_by_order(checkout.order_id)
    deleted = [e for e in trail if e.event_type == AuditEventType.ORDER_DELETED]
    assert len(deleted) == 1
    assert deleted[0].actor == "operator:ops-2"
    assert deleted[0].previous_status == "pending"


@pytest.mark.asyncio
async def test_set_status_accepts_any_status(pipeline, buyer, two_candles):
    checkout = await pipeline.create_order(buyer, two_candles)

    for status in (OrderStatus.FAILED, OrderStatus.PENDING, OrderStatus.CANCELLED):
        order = await pipeline.set_status(checkout.order_id, status, operator="ops")
        assert order.status == status


@pytest.mark.asyncio
async def test_set_status_unknown_order(pipeline):
    with pytest.raises(OrderNotFound):
        await pipeline.set_status("ORD-NOPE", OrderStatus.CAPTURED, operator="ops")
