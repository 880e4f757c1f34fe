"""
Gateway Order Adapter
=====================
Registers a persisted ``pending`` order with the payment gateway and hands
back what the buyer's client needs to open checkout.

Outcomes:
1. configured and reachable  -> gateway ref stored, order stays ``pending``
2. configured, call failed   -> order moves to ``awaiting_payment_setup``,
                                degraded result (order id, no gateway ref)
3. not configured            -> registration skipped, order id only

The internal order id is sent as the gateway receipt, so retrying outcome 2
never creates a second gateway-side order for the same sale.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from config import GatewayConfig
from schemas.order_definitions import CheckoutResult, Order, OrderStatus
from pipeline.errors import GatewayUnavailable, IllegalTransition
from pipeline.state_machine import OrderStateMachine

logger = structlog.get_logger().bind(component="gateway_adapter")


class GatewayOrder(BaseModel):
    """Gateway-side order handle."""
    gateway_order_ref: str
    amount: int
    currency: str
    receipt: str
    status: Optional[str] = None


# =============================================================================
# GATEWAY CLIENTS
# =============================================================================

class IPaymentGateway(ABC):

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """False when this deployment has no gateway credentials."""
        pass

    @property
    @abstractmethod
    def client_key(self) -> Optional[str]:
        """Public key the buyer's browser uses to open checkout."""
        pass

    @abstractmethod
    async def register_order(self, order: Order) -> GatewayOrder:
        """Create the gateway-side order. Raises GatewayUnavailable."""
        pass


class RazorpayGateway(IPaymentGateway):
    """Razorpay Orders API over httpx (basic auth with key id / key secret)."""

    def __init__(self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout_seconds,
            auth=(config.key_id, config.key_secret),
        )

    @property
    def is_available(self) -> bool:
        return self.config.is_configured

    @property
    def client_key(self) -> Optional[str]:
        return self.config.key_id or None

    async def register_order(self, order: Order) -> GatewayOrder:
        payload: Dict[str, Any] = {
            "amount": order.amount,
            "currency": order.currency,
            "receipt": order.order_id,
            "payment_capture": 1,
            "notes": {
                "order_id": order.order_id,
                "correlation_id": order.correlation_id,
            },
        }

        try:
            response = await self._client.post("/orders", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise GatewayUnavailable(f"gateway rejected order: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"gateway unreachable: {type(e).__name__}") from e
        except ValueError as e:
            raise GatewayUnavailable("gateway returned malformed JSON") from e

        if not isinstance(body, dict):
            raise GatewayUnavailable("gateway response is not an object")

        gateway_ref = body.get("id")
        if not gateway_ref:
            raise GatewayUnavailable("gateway response missing order id")

        try:
            return GatewayOrder(
                gateway_order_ref=gateway_ref,
                amount=body.get("amount", order.amount),
                currency=body.get("currency", order.currency),
                receipt=body.get("receipt", order.order_id),
                status=body.get("status"),
            )
        except ValidationError as e:
            raise GatewayUnavailable(f"gateway response has unexpected fields: {e.error_count()} errors") from e

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# ADAPTER
# =============================================================================

class GatewayOrderAdapter:

    def __init__(
        self,
        gateway: IPaymentGateway,
        state_machine: OrderStateMachine,
        timeout_seconds: float = 10.0,
    ):
        self.gateway = gateway
        self.state_machine = state_machine
        self.timeout_seconds = timeout_seconds

    def _result(self, order: Order, degraded: bool = False, message: Optional[str] = None) -> CheckoutResult:
        return CheckoutResult(
            order_id=order.order_id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            gateway_order_ref=order.gateway_order_ref,
            gateway_key=self.gateway.client_key if order.gateway_order_ref else None,
            degraded=degraded,
            message=message,
        )

    async def register(self, order: Order) -> CheckoutResult:
        log = logger.bind(order_id=order.order_id, correlation_id=order.correlation_id)

        if order.gateway_order_ref:
            # Already registered; return the existing handle.
            return self._result(order)

        if order.status not in (OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT_SETUP):
            raise IllegalTransition(order.order_id, order.status.value, OrderStatus.PENDING.value)

        if not self.gateway.is_available:
            log.warning("gateway_not_configured")
            return self._result(order, message="Payment gateway not configured; order recorded for manual follow-up")

        try:
            gateway_order = await asyncio.wait_for(
                self.gateway.register_order(order),
                timeout=self.timeout_seconds,
            )
        except (GatewayUnavailable, asyncio.TimeoutError) as e:
            reason = str(e) or "gateway registration timed out"
            log.error("gateway_registration_failed", error=reason, error_type=type(e).__name__)
            degraded = await self.state_machine.mark_payment_setup_failed(order.order_id, reason)
            return self._result(degraded, degraded=True, message="Payment setup failed; retry payment setup for this order")

        updated = await self.state_machine.attach_gateway_ref(order.order_id, gateway_order.gateway_order_ref)
        log.info("gateway_order_registered", gateway_order_ref=gateway_order.gateway_order_ref)
        return self._result(updated)
