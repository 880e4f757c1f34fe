"""
Admin Override Guard
====================
Operator actions outside the payment flow. Authentication happens at the
API layer; this enforces what an authenticated operator may do.
"""

import structlog

from schemas.order_definitions import DELETABLE_STATUSES, Order, OrderStatus
from pipeline.errors import IllegalDeletion, OrderNotFound
from pipeline.state_machine import OrderStateMachine
from services.audit import AuditEventType, IAuditLog, record
from storage.repositories import IOrderRepository

logger = structlog.get_logger().bind(component="admin_guard")


class AdminOverrideGuard:

    def __init__(
        self,
        orders: IOrderRepository,
        state_machine: OrderStateMachine,
        audit_log: IAuditLog,
    ):
        self.orders = orders
        self.state_machine = state_machine
        self.audit = audit_log

    async def set_status(self, order_id: str, status: OrderStatus, operator: str) -> Order:
        """Any status may be set; every override is logged and audited."""
        return await self.state_machine.override(order_id, status, operator)

    async def delete(self, order_id: str, operator: str) -> Order:
        """Only ``pending`` and ``failed`` orders can be deleted."""
        deleted = await self.orders.delete_if(order_id, DELETABLE_STATUSES)
        if deleted is None:
            current = await self.orders.get(order_id)
            if current is None:
                raise OrderNotFound(order_id)
            logger.warning(
                "order_delete_rejected",
                order_id=order_id,
                status=current.status.value,
                operator=operator,
            )
            raise IllegalDeletion(order_id, current.status.value)

        # A deleted pending order still holds its reservation.
        if deleted.stock_reserved:
            await self.state_machine.release_order_stock(deleted)

        logger.warning("order_deleted", order_id=order_id, status=deleted.status.value, operator=operator)
        await record(
            self.audit,
            AuditEventType.ORDER_DELETED,
            order_id=order_id,
            correlation_id=deleted.correlation_id,
            actor=f"operator:{operator}",
            previous_status=deleted.status.value,
        )
        return deleted
