# api/server.py
# ============================================================================
# STOREFRONT ORDER ENGINE — FASTAPI SERVER
# ============================================================================
# Checkout, payment verification, gateway webhooks and operator endpoints
# ============================================================================

import hmac
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
import structlog
import uvicorn

from config import ServerConfig, Settings, configure_logging

# Before any module binds its logger.
configure_logging(ServerConfig.from_env())

from database import Database, close_database  # noqa: E402
from pipeline.checkout import CheckoutPipeline, build_pipeline  # noqa: E402
from pipeline.errors import OrderPipelineError  # noqa: E402
from schemas.order_definitions import (  # noqa: E402
    Buyer,
    CartItem,
    CheckoutResult,
    Order,
    OrderStatus,
    PaymentProof,
)
from services.audit import AuditLogEntry  # noqa: E402

logger = structlog.get_logger().bind(component="api")

VERSION = "1.0.0"
START_TIME = datetime.utcnow()


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreateOrderRequest(BaseModel):
    """Checkout request from the storefront."""
    buyer: Buyer
    customer_ref: Optional[str] = None
    items: List[CartItem] = Field(..., min_length=1)


class OrderResponse(BaseModel):
    success: bool = True
    order: Order


class OrderDetailResponse(BaseModel):
    order: Order
    audit: List[AuditLogEntry]


class OrderListResponse(BaseModel):
    count: int
    orders: List[Order]


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class DeleteResponse(BaseModel):
    success: bool = True
    order_id: str


class ExpireStaleResponse(BaseModel):
    count: int
    expired: List[str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    gateway_configured: bool
    database: str


# ============================================================================
# DEPENDENCIES
# ============================================================================

bearer_scheme = HTTPBearer(auto_error=False)


class OperatorAuthError(Exception):
    """Missing or wrong admin bearer token."""


def get_pipeline(request: Request) -> CheckoutPipeline:
    return request.app.state.pipeline


def require_operator(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_operator_id: Optional[str] = Header(None),
) -> str:
    """Bearer ADMIN_API_TOKEN; returns the operator id recorded in the audit trail."""
    settings: Settings = request.app.state.settings
    expected = settings.server.admin_api_token

    if not expected:
        logger.error("admin_token_not_configured", path=request.url.path)
        raise OperatorAuthError()
    if credentials is None or not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("admin_auth_failed", path=request.url.path)
        raise OperatorAuthError()

    return x_operator_id or "admin"


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(settings: Optional[Settings] = None, pipeline: Optional[CheckoutPipeline] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    owns_pipeline = pipeline is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("server_starting", version=VERSION, env=settings.server.env)
        if app.state.pipeline is None:
            app.state.pipeline = await build_pipeline(settings)
        if not settings.gateway.is_configured:
            logger.warning("gateway_not_configured", degraded_mode="orders_without_payment")

        yield

        logger.info("server_stopping")
        if owns_pipeline and app.state.pipeline is not None:
            await app.state.pipeline.close()
        if Database.is_initialized():
            await close_database()

    app = FastAPI(
        title="Storefront Order Engine",
        description="Order lifecycle and payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(OrderPipelineError)
    async def order_pipeline_error_handler(request: Request, exc: OrderPipelineError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid')}" if field else first.get("msg", "Invalid request")
        logger.info("request_validation_failed", path=request.url.path, error_count=len(errors))
        return JSONResponse(status_code=400, content={"error": "ValidationError", "message": message})

    @app.exception_handler(OperatorAuthError)
    async def operator_auth_error_handler(request: Request, exc: OperatorAuthError):
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized", "message": "Operator authentication required"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    _register_routes(app)
    return app


def _checkout_response(result: CheckoutResult, success_code: int = 201) -> JSONResponse:
    # Degraded checkout: order exists, payment setup must be retried.
    status_code = 500 if result.degraded else success_code
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


# ============================================================================
# ENDPOINTS
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        settings: Settings = request.app.state.settings
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.utcnow() - START_TIME).total_seconds(),
            gateway_configured=settings.gateway.is_configured,
            database="postgres" if Database.is_initialized() else "in_memory",
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness probe"""
        ready = request.app.state.pipeline is not None
        return JSONResponse(status_code=200 if ready else 503, content={"ready": ready})

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # ---------------------------------------------------------------- checkout

    @app.post("/api/v1/orders", status_code=201, response_model=CheckoutResult)
    async def create_order(body: CreateOrderRequest, pipeline: CheckoutPipeline = Depends(get_pipeline)):
        result = await pipeline.create_order(body.buyer, body.items, customer_ref=body.customer_ref)
        return _checkout_response(result)

    @app.post("/api/v1/orders/verify", response_model=OrderResponse)
    async def verify_order(proof: PaymentProof, pipeline: CheckoutPipeline = Depends(get_pipeline)):
        """Client callback after the buyer completes payment."""
        order = await pipeline.verify_payment(proof)
        return OrderResponse(order=order)

    @app.post("/api/v1/orders/{order_id}/payment-setup", response_model=CheckoutResult)
    async def retry_payment_setup(order_id: str, pipeline: CheckoutPipeline = Depends(get_pipeline)):
        result = await pipeline.retry_payment_setup(order_id)
        return _checkout_response(result, success_code=200)

    # ---------------------------------------------------------------- webhooks

    @app.post("/api/v1/webhooks/razorpay")
    async def razorpay_webhook(
        request: Request,
        x_razorpay_signature: Optional[str] = Header(None),
        x_razorpay_event_id: Optional[str] = Header(None),
        pipeline: CheckoutPipeline = Depends(get_pipeline),
    ):
        # Signature covers the exact bytes received.
        raw_body = await request.body()
        ack = await pipeline.process_webhook(raw_body, x_razorpay_signature, x_razorpay_event_id)
        return JSONResponse(
            status_code=ack.status_code,
            content=ack.model_dump(mode="json", exclude={"status_code"}),
        )

    # ---------------------------------------------------------------- admin

    @app.get("/api/v1/admin/orders", response_model=OrderListResponse)
    async def list_orders(
        hide_old_pending: bool = False,
        operator: str = Depends(require_operator),
        pipeline: CheckoutPipeline = Depends(get_pipeline),
    ):
        orders = await pipeline.list_orders(hide_old_pending=hide_old_pending)
        return OrderListResponse(count=len(orders), orders=orders)

    @app.post("/api/v1/admin/orders/expire-stale", response_model=ExpireStaleResponse)
    async def expire_stale(
        operator: str = Depends(require_operator),
        pipeline: CheckoutPipeline = Depends(get_pipeline),
    ):
        expired = await pipeline.expire_stale_orders(operator=operator)
        return ExpireStaleResponse(count=len(expired), expired=expired)

    @app.get("/api/v1/admin/orders/{order_id}", response_model=OrderDetailResponse)
    async def get_order(
        order_id: str,
        operator: str = Depends(require_operator),
        pipeline: CheckoutPipeline = Depends(get_pipeline),
    ):
        order = await pipeline.get_order(order_id)
        audit = await pipeline.get_audit_trail(order_id)
        return OrderDetailResponse(order=order, audit=audit)

    @app.patch("/api/v1/admin/orders/{order_id}/status", response_model=OrderResponse)
    async def update_order_status(
        order_id: str,
        body: StatusUpdateRequest,
        operator: str = Depends(require_operator),
        pipeline: CheckoutPipeline = Depends(get_pipeline),
    ):
        order = await pipeline.set_status(order_id, body.status, operator)
        return OrderResponse(order=order)

    @app.delete("/api/v1/admin/orders/{order_id}", response_model=DeleteResponse)
    async def delete_order(
        order_id: str,
        operator: str = Depends(require_operator),
        pipeline: CheckoutPipeline = Depends(get_pipeline),
    ):
        deleted = await pipeline.delete_order(order_id, operator)
        return DeleteResponse(order_id=deleted.order_id)


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    server = ServerConfig.from_env()
    uvicorn.run(
        "api.server:app",
        host=server.host,
        port=server.port,
        reload=server.debug,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
