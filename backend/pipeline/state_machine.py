"""
Order State Machine
===================
The only code that changes an order's status.

    pending                -> awaiting_payment_setup | pending (gateway ref attached)
                              | captured | failed | cancelled
    awaiting_payment_setup -> pending (gateway ref attached)
                              | captured | failed | cancelled
    paid / captured / failed / cancelled
                           -> terminal for the automated flow; operator only

Every move is one conditional update in the order repository, guarded by the
current status. A verified payment for an order that is already confirmed is
a no-op reported as success: side effects (confirmation email, audit entry)
run only for the call whose update actually applied.

Side effects:
- entering captured schedules a best-effort confirmation email
- entering failed / cancelled gives reserved stock back to the catalog
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Set

import structlog

from schemas.order_definitions import (
    CONFIRMED_STATUSES,
    OPEN_STATUSES,
    STOCK_RELEASING_STATUSES,
    ConfirmationSource,
    Order,
    OrderStatus,
    TransitionResult,
)
from pipeline.errors import IllegalTransition, OrderMismatch, OrderNotFound
from services.audit import AuditEventType, IAuditLog, record
from services.notifications import IOrderNotifier
from storage.repositories import IOrderRepository, IProductStore

logger = structlog.get_logger().bind(component="order_state_machine")


def canonical_status(status: OrderStatus) -> OrderStatus:
    """``paid`` and ``captured`` mean the same thing; store ``captured``."""
    return OrderStatus.CAPTURED if status == OrderStatus.PAID else status


class OrderStateMachine:

    def __init__(
        self,
        orders: IOrderRepository,
        products: IProductStore,
        notifier: IOrderNotifier,
        audit_log: IAuditLog,
    ):
        self.orders = orders
        self.products = products
        self.notifier = notifier
        self.audit = audit_log
        self._background: Set[asyncio.Task] = set()

    def _get_logger(self, order: Order):
        return logger.bind(order_id=order.order_id, correlation_id=order.correlation_id)

    async def _require(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # =========================================================================
    # GATEWAY REGISTRATION
    # =========================================================================

    async def attach_gateway_ref(self, order_id: str, gateway_order_ref: str) -> Order:
        """Record the gateway's order handle; the order is (again) ``pending``."""
        updated = await self.orders.transition(
            order_id,
            OPEN_STATUSES,
            OrderStatus.PENDING,
            updates={"gateway_order_ref": gateway_order_ref},
        )
        if updated is None:
            current = await self._require(order_id)
            raise IllegalTransition(order_id, current.status.value, OrderStatus.PENDING.value)

        if updated.previous_status == OrderStatus.AWAITING_PAYMENT_SETUP:
            await record(
                self.audit,
                AuditEventType.PAYMENT_SETUP_REGISTERED,
                order_id=order_id,
                correlation_id=updated.correlation_id,
                previous_status=updated.previous_status.value,
                new_status=updated.status.value,
                gateway_order_ref=gateway_order_ref,
            )
        return updated

    async def mark_payment_setup_failed(self, order_id: str, reason: str) -> Order:
        """Gateway registration failed; the order waits for a retry."""
        updated = await self.orders.transition(
            order_id,
            [OrderStatus.PENDING],
            OrderStatus.AWAITING_PAYMENT_SETUP,
        )
        if updated is None:
            current = await self._require(order_id)
            if current.status != OrderStatus.AWAITING_PAYMENT_SETUP:
                raise IllegalTransition(order_id, current.status.value, OrderStatus.AWAITING_PAYMENT_SETUP.value)
            updated = current
            previous_status = current.status
        else:
            previous_status = OrderStatus.PENDING

        updated = await self.orders.append_metadata(
            order_id,
            "payment_setup_errors",
            {"reason": reason, "at": datetime.utcnow().isoformat()},
        ) or updated

        await record(
            self.audit,
            AuditEventType.PAYMENT_SETUP_FAILED,
            order_id=order_id,
            correlation_id=updated.correlation_id,
            previous_status=previous_status.value,
            new_status=updated.status.value,
            reason=reason,
        )
        return updated

    # =========================================================================
    # PAYMENT OUTCOMES
    # =========================================================================

    async def confirm_payment(
        self,
        order_id: str,
        gateway_order_ref: str,
        gateway_payment_ref: Optional[str],
        source: ConfirmationSource,
        signature: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move a verified payment to ``captured``. Callers must have verified
        the gateway signature first.
        """
        updates: Dict[str, Any] = {
            "gateway_payment_ref": gateway_payment_ref,
            "confirmed_via": source,
            "confirmed_at": datetime.utcnow(),
        }
        if signature is not None:
            updates["gateway_signature"] = signature

        updated = await self.orders.transition(
            order_id,
            OPEN_STATUSES,
            OrderStatus.CAPTURED,
            updates=updates,
            gateway_order_ref=gateway_order_ref,
        )

        if updated is None:
            current = await self._require(order_id)
            if current.gateway_order_ref != gateway_order_ref:
                raise OrderMismatch(order_id)
            if current.status in CONFIRMED_STATUSES:
                self._get_logger(current).info("payment_already_confirmed", source=source.value)
                return TransitionResult(order=current, applied=False)
            raise IllegalTransition(order_id, current.status.value, OrderStatus.CAPTURED.value)

        self._get_logger(updated).info(
            "payment_confirmed",
            source=source.value,
            previous_status=updated.previous_status.value,
        )
        await record(
            self.audit,
            AuditEventType.PAYMENT_CONFIRMED,
            order_id=order_id,
            correlation_id=updated.correlation_id,
            actor=source.value,
            previous_status=updated.previous_status.value,
            new_status=updated.status.value,
            gateway_payment_ref=gateway_payment_ref,
        )
        self._schedule_confirmation(updated)
        return TransitionResult(order=updated, applied=True)

    async def fail_payment(
        self,
        order_id: str,
        gateway_order_ref: str,
        gateway_payment_ref: Optional[str],
        source: ConfirmationSource,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        updated = await self.orders.transition(
            order_id,
            OPEN_STATUSES,
            OrderStatus.FAILED,
            updates={"gateway_payment_ref": gateway_payment_ref},
            gateway_order_ref=gateway_order_ref,
        )

        if updated is None:
            current = await self._require(order_id)
            if current.gateway_order_ref != gateway_order_ref:
                raise OrderMismatch(order_id)
            if current.status == OrderStatus.FAILED:
                return TransitionResult(order=current, applied=False)
            raise IllegalTransition(order_id, current.status.value, OrderStatus.FAILED.value)

        self._get_logger(updated).warning("payment_failed", source=source.value, reason=reason)
        await record(
            self.audit,
            AuditEventType.PAYMENT_FAILED,
            order_id=order_id,
            correlation_id=updated.correlation_id,
            actor=source.value,
            previous_status=updated.previous_status.value,
            new_status=updated.status.value,
            reason=reason,
        )
        await self.release_stock(order_id)
        return TransitionResult(order=updated, applied=True)

    async def cancel(self, order_id: str, actor: str = "system", reason: Optional[str] = None) -> Optional[Order]:
        """Cancel an open order. Returns None if it was no longer open."""
        updated = await self.orders.transition(order_id, OPEN_STATUSES, OrderStatus.CANCELLED)
        if updated is None:
            return None

        await record(
            self.audit,
            AuditEventType.ORDER_EXPIRED if actor == "system" else AuditEventType.ORDER_STATUS_CHANGED,
            order_id=order_id,
            correlation_id=updated.correlation_id,
            actor=actor,
            previous_status=updated.previous_status.value,
            new_status=updated.status.value,
            reason=reason,
        )
        await self.release_stock(order_id)
        return updated

    # =========================================================================
    # OPERATOR OVERRIDE
    # =========================================================================

    async def override(self, order_id: str, status: OrderStatus, operator: str) -> Order:
        """
        Set any status. Guarded by the status observed just before the write,
        retried if a concurrent transition got there first.
        """
        target = canonical_status(status)

        for _ in range(3):
            current = await self._require(order_id)
            updates: Dict[str, Any] = {}
            entering_confirmed = target in CONFIRMED_STATUSES and current.status not in CONFIRMED_STATUSES
            if entering_confirmed:
                updates = {"confirmed_via": ConfirmationSource.ADMIN, "confirmed_at": datetime.utcnow()}

            updated = await self.orders.transition(order_id, [current.status], target, updates=updates)
            if updated is not None:
                break
        else:
            raise IllegalTransition(order_id, "concurrently modified", target.value)

        log = self._get_logger(updated)
        log.warning(
            "order_status_overridden",
            operator=operator,
            previous_status=updated.previous_status.value,
            new_status=updated.status.value,
        )
        await record(
            self.audit,
            AuditEventType.ORDER_STATUS_CHANGED,
            order_id=order_id,
            correlation_id=updated.correlation_id,
            actor=f"operator:{operator}",
            previous_status=updated.previous_status.value,
            new_status=updated.status.value,
        )

        if target in STOCK_RELEASING_STATUSES:
            await self.release_stock(order_id)
        elif not updated.stock_reserved and updated.previous_status in STOCK_RELEASING_STATUSES:
            log.warning("stock_not_re_reserved", operator=operator)

        if entering_confirmed:
            self._schedule_confirmation(updated)
        return updated

    # =========================================================================
    # SIDE EFFECTS
    # =========================================================================

    async def release_stock(self, order_id: str) -> bool:
        """Give the order's reserved stock back, at most once per order."""
        claimed = await self.orders.claim_stock_release(order_id)
        if claimed is None:
            return False
        await self.release_order_stock(claimed)
        return True

    async def release_order_stock(self, order: Order) -> None:
        quantities: Dict[str, int] = {}
        for item in order.line_items:
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
        await self.products.release(quantities)

        await record(
            self.audit,
            AuditEventType.STOCK_RELEASED,
            order_id=order.order_id,
            correlation_id=order.correlation_id,
            quantities=quantities,
        )

    def _schedule_confirmation(self, order: Order) -> None:
        task = asyncio.create_task(self._send_confirmation(order))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_confirmation(self, order: Order) -> None:
        log = self._get_logger(order)
        try:
            await self.notifier.send_order_confirmation(order)
        except Exception as e:
            # Never rolls back the payment; observability only.
            log.error("order_confirmation_failed", error=str(e), error_type=type(e).__name__)

    async def drain(self) -> None:
        """Wait for in-flight confirmation emails (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
