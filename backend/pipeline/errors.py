"""
Order pipeline errors.

Every business-rule failure carries a stable ``code`` and the HTTP status the
API layer renders it with. Integration failures (``GatewayUnavailable``) are
recovered locally and never reach a client.
"""

from typing import Optional


class OrderPipelineError(Exception):
    code = "OrderPipelineError"
    status_code = 400

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.order_id:
            body["order_id"] = self.order_id
        return body


class ProductUnavailable(OrderPipelineError):
    code = "ProductUnavailable"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} unavailable")
        self.product_id = product_id


class InsufficientStock(OrderPipelineError):
    code = "InsufficientStock"

    def __init__(self, product_id: str, title: Optional[str] = None, available: Optional[int] = None):
        super().__init__(f"Insufficient stock for {title or product_id}")
        self.product_id = product_id
        self.available = available


class InvalidAmount(OrderPipelineError):
    code = "InvalidAmount"


class OrderNotFound(OrderPipelineError):
    code = "OrderNotFound"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Order not found", order_id=order_id)


class OrderMismatch(OrderPipelineError):
    code = "OrderMismatch"

    def __init__(self, order_id: str):
        super().__init__("Order mismatch", order_id=order_id)


class InvalidSignature(OrderPipelineError):
    code = "InvalidSignature"

    def __init__(self):
        # Never say why verification failed.
        super().__init__("Invalid signature")


class IllegalDeletion(OrderPipelineError):
    code = "IllegalDeletion"

    def __init__(self, order_id: str, status: str):
        super().__init__("Can only delete pending or failed orders", order_id=order_id)
        self.status = status


class IllegalTransition(OrderPipelineError):
    code = "IllegalTransition"
    status_code = 409

    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(f"Cannot move order from {current} to {target}", order_id=order_id)
        self.current = current
        self.target = target


class GatewayUnavailable(Exception):
    """Gateway registration failed (network, timeout, bad response)."""
