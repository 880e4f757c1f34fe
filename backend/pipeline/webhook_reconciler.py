"""
Webhook Reconciler
==================
Server-to-server payment notifications from the gateway.

    raw body + signature header
        -> verify (before parsing anything)
        -> dedupe by event id (processed-event ledger)
        -> route by event type
        -> locate order by gateway order ref
        -> state machine transition (idempotent)

Anything the gateway cannot fix by retrying (unknown order, missing order
ref, unknown event type) is acknowledged 2xx so the gateway stops
redelivering. Only a missing or invalid signature is a 400.
"""

import hashlib
import json
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from schemas.order_definitions import ConfirmationSource, WebhookAck
from pipeline.errors import IllegalTransition, InvalidSignature, OrderNotFound
from pipeline.signatures import SignatureVerifier
from pipeline.state_machine import OrderStateMachine
from services.audit import AuditEventType, IAuditLog, record
from storage.repositories import IIdempotencyStore, IOrderRepository

logger = structlog.get_logger().bind(component="webhook_reconciler")

WebhookHandler = Callable[[Dict[str, Any], str], Awaitable[WebhookAck]]


# =============================================================================
# ROUTER
# =============================================================================

class WebhookRouter:
    """Maps gateway event types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: Dict[str, Any], event_id: str) -> Optional[WebhookAck]:
        event_type = event.get("event", "unknown")
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type, event_id=event_id)
            return None
        return await handler(event, event_id)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


def extract_payment_entity(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("payload") or {}).get("payment", {}).get("entity") or {}


def extract_order_ref(event: Dict[str, Any]) -> Optional[str]:
    """Gateway order ref from ``payload.payment.entity.order_id`` (or the order entity)."""
    ref = extract_payment_entity(event).get("order_id")
    if ref:
        return ref
    return (event.get("payload") or {}).get("order", {}).get("entity", {}).get("id")


# =============================================================================
# RECONCILER
# =============================================================================

class WebhookReconciler:

    def __init__(
        self,
        verifier: SignatureVerifier,
        orders: IOrderRepository,
        state_machine: OrderStateMachine,
        ledger: IIdempotencyStore,
        audit_log: IAuditLog,
    ):
        self.verifier = verifier
        self.orders = orders
        self.state_machine = state_machine
        self.ledger = ledger
        self.audit = audit_log

        self.router = WebhookRouter()
        self._register_handlers()

    def _register_handlers(self):

        @self.router.register("payment.captured")
        async def handle_payment_captured(event: Dict[str, Any], event_id: str) -> WebhookAck:
            return await self._apply(event, event_id, captured=True)

        @self.router.register("order.paid")
        async def handle_order_paid(event: Dict[str, Any], event_id: str) -> WebhookAck:
            return await self._apply(event, event_id, captured=True)

        @self.router.register("payment.failed")
        async def handle_payment_failed(event: Dict[str, Any], event_id: str) -> WebhookAck:
            return await self._apply(event, event_id, captured=False)

    @staticmethod
    def _event_id(raw_body: bytes, event: Dict[str, Any], header_event_id: Optional[str]) -> str:
        if header_event_id:
            return header_event_id
        if event.get("id"):
            return str(event["id"])
        return "sha256:" + hashlib.sha256(raw_body).hexdigest()

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> WebhookAck:
        if not signature:
            logger.warning("webhook_signature_missing")
            raise InvalidSignature()
        if not self.verifier.verify_webhook(raw_body, signature):
            logger.warning("webhook_signature_invalid", body_size=len(raw_body))
            raise InvalidSignature()

        try:
            event = json.loads(raw_body)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            # Authentic but unusable; redelivery would not help.
            logger.error("webhook_parse_error", body_size=len(raw_body))
            return WebhookAck(status="malformed", status_code=202, event_id=event_id)

        event_type = event.get("event", "unknown")
        event_id = self._event_id(raw_body, event, event_id)
        log = logger.bind(event_id=event_id, event_type=event_type)

        if await self.ledger.is_completed(event_id):
            log.info("webhook_duplicate")
            return WebhookAck(status="duplicate", event_id=event_id, event_type=event_type)

        holder_id = str(uuid.uuid4())
        if not await self.ledger.try_acquire(event_id, holder_id):
            log.info("webhook_processing_elsewhere")
            return WebhookAck(
                status="processing_elsewhere",
                status_code=202,
                event_id=event_id,
                event_type=event_type,
            )

        try:
            ack = await self.router.route(event, event_id)
        except Exception:
            await self.ledger.release(event_id, holder_id)
            log.error("webhook_processing_failed", exc_info=True)
            raise

        if ack is None:
            ack = WebhookAck(status="ignored", event_id=event_id, event_type=event_type)
        await self.ledger.mark_completed(event_id, ack.status)
        log.info("webhook_processed", status=ack.status, order_id=ack.order_id)
        return ack

    async def _apply(self, event: Dict[str, Any], event_id: str, captured: bool) -> WebhookAck:
        event_type = event.get("event")
        log = logger.bind(event_id=event_id, event_type=event_type)

        gateway_order_ref = extract_order_ref(event)
        if not gateway_order_ref:
            log.warning("webhook_order_ref_missing")
            return WebhookAck(status="ignored_no_order_ref", status_code=202, event_id=event_id, event_type=event_type)

        order = await self.orders.get_by_gateway_ref(gateway_order_ref)
        if order is None:
            log.warning("webhook_order_not_found", gateway_order_ref=gateway_order_ref)
            return WebhookAck(status="order_not_found", status_code=202, event_id=event_id, event_type=event_type)

        await record(
            self.audit,
            AuditEventType.WEBHOOK_RECEIVED,
            order_id=order.order_id,
            correlation_id=order.correlation_id,
            actor=ConfirmationSource.WEBHOOK.value,
            event_id=event_id,
            gateway_event=event_type,
        )

        payment = extract_payment_entity(event)
        payment_ref = payment.get("id")
        try:
            if captured:
                result = await self.state_machine.confirm_payment(
                    order.order_id,
                    gateway_order_ref,
                    payment_ref,
                    ConfirmationSource.WEBHOOK,
                )
            else:
                result = await self.state_machine.fail_payment(
                    order.order_id,
                    gateway_order_ref,
                    payment_ref,
                    ConfirmationSource.WEBHOOK,
                    reason=payment.get("error_description") or payment.get("error_code"),
                )
        except OrderNotFound:
            # Deleted by an operator after the lookup.
            log.warning("webhook_order_vanished", order_id=order.order_id)
            return WebhookAck(status="order_not_found", status_code=202, event_id=event_id, event_type=event_type)
        except IllegalTransition as e:
            # Gateway and store disagree (e.g. captured after cancellation); needs an operator.
            log.error(
                "webhook_transition_rejected",
                order_id=order.order_id,
                current_status=e.current,
                target_status=e.target,
            )
            status = "conflict"
        else:
            status = "processed" if result.applied else "already_processed"

        await self.orders.append_metadata(order.order_id, "webhook_events", {
            "event_id": event_id,
            "event": event_type,
            "received_at": datetime.utcnow().isoformat(),
            "outcome": status,
            "payload": event.get("payload"),
        })

        return WebhookAck(status=status, event_id=event_id, event_type=event_type, order_id=order.order_id)
