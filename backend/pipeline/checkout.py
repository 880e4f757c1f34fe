"""
Checkout Pipeline
=================
Facade wiring the order lifecycle components together. The API layer talks
only to this class.

Example:
    pipeline = await build_pipeline(Settings.from_env())
    result = await pipeline.create_order(buyer, items)
    # buyer pays in the gateway checkout opened with result.gateway_key
    order = await pipeline.verify_payment(proof)
    # gateway, independently: await pipeline.process_webhook(body, signature)
"""

from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import structlog

from config import Settings
from database import Database
from schemas.order_definitions import (
    Buyer,
    CartItem,
    CheckoutResult,
    ConfirmationSource,
    Order,
    OrderStatus,
    PaymentProof,
    WebhookAck,
)
from pipeline.admin_guard import AdminOverrideGuard
from pipeline.catalog_resolver import CatalogSnapshotResolver
from pipeline.errors import InvalidSignature, OrderMismatch, OrderNotFound
from pipeline.gateway_adapter import GatewayOrderAdapter, IPaymentGateway, RazorpayGateway
from pipeline.order_builder import OrderAggregateBuilder
from pipeline.signatures import SignatureVerifier
from pipeline.state_machine import OrderStateMachine
from pipeline.webhook_reconciler import WebhookReconciler
from services.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog, PostgresAuditLog, record
from services.notifications import IOrderNotifier, build_notifier
from storage.repositories import (
    ICustomerStore,
    IIdempotencyStore,
    IOrderRepository,
    IProductStore,
    InMemoryCustomerStore,
    InMemoryIdempotencyStore,
    InMemoryOrderRepository,
    InMemoryProductStore,
)
from tasks.stale_orders import expire_stale_orders

logger = structlog.get_logger().bind(component="checkout_pipeline")

LIST_LIMIT = 100


class CheckoutPipeline:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        products: Optional[IProductStore] = None,
        customers: Optional[ICustomerStore] = None,
        orders: Optional[IOrderRepository] = None,
        ledger: Optional[IIdempotencyStore] = None,
        audit_log: Optional[IAuditLog] = None,
        notifier: Optional[IOrderNotifier] = None,
        gateway: Optional[IPaymentGateway] = None,
    ):
        # Dependency injection with defaults
        self.settings = settings or Settings()
        self.products = products or InMemoryProductStore()
        self.customers = customers or InMemoryCustomerStore()
        self.orders = orders or InMemoryOrderRepository()
        self.ledger = ledger or InMemoryIdempotencyStore()
        self.audit = audit_log or InMemoryAuditLog()
        self.notifier = notifier or build_notifier(self.settings.notifier)
        self.gateway = gateway or RazorpayGateway(self.settings.gateway)

        self.verifier = SignatureVerifier(self.settings.gateway)
        self.state_machine = OrderStateMachine(self.orders, self.products, self.notifier, self.audit)
        self.resolver = CatalogSnapshotResolver(self.products)
        self.builder = OrderAggregateBuilder(
            self.products,
            self.orders,
            self.customers,
            currency=self.settings.gateway.currency,
        )
        self.adapter = GatewayOrderAdapter(
            self.gateway,
            self.state_machine,
            timeout_seconds=self.settings.gateway.timeout_seconds,
        )
        self.reconciler = WebhookReconciler(
            self.verifier,
            self.orders,
            self.state_machine,
            self.ledger,
            self.audit,
        )
        self.admin = AdminOverrideGuard(self.orders, self.state_machine, self.audit)

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_order(
        self,
        buyer: Buyer,
        items: Sequence[CartItem],
        customer_ref: Optional[str] = None,
    ) -> CheckoutResult:
        resolved = await self.resolver.resolve(items)
        order = await self.builder.build(buyer, resolved, customer_ref=customer_ref)

        await record(
            self.audit,
            AuditEventType.ORDER_CREATED,
            order_id=order.order_id,
            correlation_id=order.correlation_id,
            new_status=order.status.value,
            amount=order.amount,
            currency=order.currency,
        )
        return await self.adapter.register(order)

    async def retry_payment_setup(self, order_id: str) -> CheckoutResult:
        order = await self.get_order(order_id)
        return await self.adapter.register(order)

    # =========================================================================
    # PAYMENT CONFIRMATION
    # =========================================================================

    async def verify_payment(self, proof: PaymentProof) -> Order:
        """
        Client callback path. Replaying a valid proof for an order that is
        already confirmed returns the order without repeating side effects.
        """
        order = await self.orders.get(proof.order_id)
        if order is None:
            raise OrderNotFound(proof.order_id)

        log = logger.bind(order_id=order.order_id, correlation_id=order.correlation_id)

        if order.gateway_order_ref != proof.gateway_order_ref:
            log.warning("payment_order_mismatch")
            raise OrderMismatch(order.order_id)

        if not self.verifier.verify_payment(proof.gateway_order_ref, proof.gateway_payment_ref, proof.signature):
            log.warning("payment_signature_invalid")
            raise InvalidSignature()

        result = await self.state_machine.confirm_payment(
            order.order_id,
            proof.gateway_order_ref,
            proof.gateway_payment_ref,
            ConfirmationSource.CALLBACK,
            signature=proof.signature,
        )
        log.info("payment_verified", applied=result.applied)
        return result.order

    async def process_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> WebhookAck:
        return await self.reconciler.handle(raw_body, signature, event_id)

    # =========================================================================
    # OPERATOR
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def list_orders(self, hide_old_pending: bool = False, limit: int = LIST_LIMIT) -> List[Order]:
        cutoff = None
        if hide_old_pending:
            cutoff = datetime.utcnow() - timedelta(hours=self.settings.storage.stale_pending_hours)
        return await self.orders.list_recent(limit=min(limit, LIST_LIMIT), hide_pending_before=cutoff)

    async def get_audit_trail(self, order_id: str) -> List[AuditLogEntry]:
        return await self.audit.get_by_order(order_id)

    async def set_status(self, order_id: str, status: OrderStatus, operator: str) -> Order:
        return await self.admin.set_status(order_id, status, operator)

    async def delete_order(self, order_id: str, operator: str) -> Order:
        return await self.admin.delete(order_id, operator)

    async def expire_stale_orders(self, operator: Optional[str] = None) -> List[str]:
        return await expire_stale_orders(
            self.orders,
            self.state_machine,
            older_than_hours=self.settings.storage.stale_pending_hours,
            actor=f"operator:{operator}" if operator else "system",
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def drain(self) -> None:
        await self.state_machine.drain()

    async def close(self) -> None:
        await self.drain()
        for component in (self.gateway, self.notifier, self.ledger):
            close = getattr(component, "close", None)
            if close is not None:
                await close()


async def build_pipeline(settings: Settings) -> CheckoutPipeline:
    """Pick PostgreSQL / Redis backends when configured, in-memory otherwise."""
    storage = settings.storage
    kwargs = {}

    if storage.database_url:
        from storage.postgres import PostgresCustomerStore, PostgresOrderRepository, PostgresProductStore

        await Database.initialize(storage)
        kwargs.update(
            products=PostgresProductStore(),
            customers=PostgresCustomerStore(),
            orders=PostgresOrderRepository(),
            audit_log=PostgresAuditLog(),
        )
    else:
        logger.warning("database_not_configured", fallback="in_memory")

    if storage.redis_url:
        from storage.idempotency import RedisIdempotencyAdapter

        kwargs["ledger"] = RedisIdempotencyAdapter.from_url(
            storage.redis_url,
            ttl_seconds=storage.idempotency_ttl_seconds,
        )
    else:
        logger.warning("redis_not_configured", fallback="in_memory")

    return CheckoutPipeline(settings, **kwargs)
