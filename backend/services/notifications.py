# services/notifications.py
# ============================================================================
# STOREFRONT ORDER ENGINE — ORDER CONFIRMATION NOTIFICATIONS
# ============================================================================
# Confirmation email dispatch. SendGrid dynamic templates over httpx when
# configured, a logging notifier otherwise.
# ============================================================================

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from config import NotifierConfig
from schemas.order_definitions import Order

logger = structlog.get_logger().bind(component="notifications")


class NotificationError(Exception):
    """Email provider rejected or did not answer."""


def format_amount(amount: int, currency: str) -> str:
    """Smallest unit to a display string, e.g. 129900 INR -> 'INR 1,299.00'."""
    return f"{currency} {amount / 100:,.2f}"


def build_template_data(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.order_id,
        "customer_name": order.buyer.name,
        "items": [
            {
                "title": item.title,
                "quantity": item.quantity,
                "unit_price": format_amount(item.unit_price, order.currency),
                "line_total": format_amount(item.line_total, order.currency),
            }
            for item in order.line_items
        ],
        "total": format_amount(order.amount, order.currency),
    }


class IOrderNotifier(ABC):

    @abstractmethod
    async def send_order_confirmation(self, order: Order) -> Optional[str]:
        """Send the confirmation email; returns a provider message id if any."""
        pass


class LoggingNotifier(IOrderNotifier):
    """Used when no email provider is configured."""

    async def send_order_confirmation(self, order: Order) -> Optional[str]:
        logger.info(
            "order_confirmation_skipped",
            reason="email_provider_not_configured",
            order_id=order.order_id,
        )
        return None


class SendGridNotifier(IOrderNotifier):

    def __init__(self, config: NotifierConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout_seconds,
            headers={"Authorization": f"Bearer {config.api_key}"},
        )

    async def send_order_confirmation(self, order: Order) -> Optional[str]:
        message = {
            "from": {"email": self.config.from_email},
            "personalizations": [{
                "to": [{"email": order.buyer.email, "name": order.buyer.name}],
                "dynamic_template_data": build_template_data(order),
            }],
            "template_id": self.config.template_id,
        }

        try:
            response = await self._client.post("/mail/send", json=message)
        except httpx.HTTPError as e:
            raise NotificationError(f"SendGrid request failed: {e}") from e

        if response.status_code >= 300:
            raise NotificationError(f"SendGrid returned {response.status_code}")

        message_id = response.headers.get("X-Message-Id")
        logger.info("order_confirmation_sent", order_id=order.order_id, message_id=message_id)
        return message_id

    async def close(self):
        await self._client.aclose()


def build_notifier(config: NotifierConfig) -> IOrderNotifier:
    if config.is_configured:
        return SendGridNotifier(config)
    return LoggingNotifier()
