"""
End-to-end tests through the FastAPI app (in-process ASGI transport).
"""

import httpx
import pytest

from api.server import create_app
from schemas.order_definitions import OrderStatus

from conftest import ADMIN_TOKEN, sign_payment, sign_webhook, stock_of, webhook_body

ADMIN = {"Authorization": f"Bearer {ADMIN_TOKEN}", "X-Operator-Id": "ops-1"}

ORDER_BODY = {
    "buyer": {"name": "Asha Rao", "email": "asha@example.com"},
    "items": [{"product_id": "lavender", "quantity": 2}],
}


@pytest.fixture
async def client(settings, pipeline):
    app = create_app(settings, pipeline=pipeline)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_order(client, body=None) -> dict:
    response = await client.post("/api/v1/orders", json=body or ORDER_BODY)
    assert response.status_code == 201, response.text
    return response.json()


def proof_for(created: dict, payment_ref: str = "pay_e2e_1") -> dict:
    return {
        "order_id": created["order_id"],
        "gateway_order_ref": created["gateway_order_ref"],
        "gateway_payment_ref": payment_ref,
        "signature": sign_payment(created["gateway_order_ref"], payment_ref),
    }


class TestCheckoutFlow:

    @pytest.mark.asyncio
    async def test_create_then_verify_captures_order(self, client, pipeline, notifier):
        created = await create_order(client)

        assert created["amount"] == 1000
        assert created["currency"] == "INR"
        assert created["gateway_order_ref"]
        assert created["gateway_key"] == "rzp_test_key"

        response = await client.post("/api/v1/orders/verify", json=proof_for(created))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["order"]["status"] == "captured"
        assert body["order"]["is_payment_confirmed"] is True

        await pipeline.drain()
        assert notifier.sent == [created["order_id"]]

    @pytest.mark.asyncio
    async def test_verify_twice_is_idempotent(self, client, pipeline, notifier):
        created = await create_order(client)
        proof = proof_for(created)

        first = await client.post("/api/v1/orders/verify", json=proof)
        second = await client.post("/api/v1/orders/verify", json=proof)
        await pipeline.drain()

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["order"]["status"] == "captured"
        assert notifier.sent == [created["order_id"]]

    @pytest.mark.asyncio
    async def test_out_of_stock_product_creates_nothing(self, client, pipeline):
        response = await client.post("/api/v1/orders", json={
            "buyer": {"name": "Asha Rao", "email": "asha@example.com"},
            "items": [{"product_id": "vanilla", "quantity": 1}],
        })

        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientStock"
        assert response.json()["message"] == "Insufficient stock for Vanilla Candle"
        assert await pipeline.orders.list_recent() == []

    @pytest.mark.asyncio
    async def test_unavailable_product(self, client):
        response = await client.post("/api/v1/orders", json={
            "buyer": {"name": "Asha Rao", "email": "asha@example.com"},
            "items": [{"product_id": "retired", "quantity": 1}],
        })

        assert response.status_code == 400
        assert response.json()["error"] == "ProductUnavailable"

    @pytest.mark.asyncio
    async def test_empty_cart_is_a_validation_error(self, client):
        response = await client.post("/api/v1/orders", json={
            "buyer": {"name": "Asha Rao", "email": "asha@example.com"},
            "items": [],
        })

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert response.json()["message"].startswith("items")

    @pytest.mark.asyncio
    async def test_zero_quantity_is_rejected_without_side_effects(self, client, pipeline, products):
        response = await client.post("/api/v1/orders", json={
            "buyer": {"name": "Asha Rao", "email": "asha@example.com"},
            "items": [{"product_id": "lavender", "quantity": 0}],
        })

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert await pipeline.orders.list_recent() == []
        assert await stock_of(products, "lavender") == 10

    @pytest.mark.asyncio
    async def test_gateway_failure_returns_500_with_order_id(self, client, gateway):
        gateway.fail = True

        response = await client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 500
        body = response.json()
        assert body["order_id"].startswith("ORD-")
        assert body["gateway_order_ref"] is None
        assert body["status"] == "awaiting_payment_setup"

        gateway.fail = False
        retried = await client.post(f"/api/v1/orders/{body['order_id']}/payment-setup")
        assert retried.status_code == 200
        assert retried.json()["gateway_order_ref"] == f"order_{body['order_id']}"

    @pytest.mark.asyncio
    async def test_gateway_not_configured_still_records_order(self, client, gateway):
        gateway.available = False

        response = await client.post("/api/v1/orders", json=ORDER_BODY)

        assert response.status_code == 201
        assert response.json()["gateway_order_ref"] is None
        assert response.json()["message"]


class TestVerifyRejections:

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client):
        created = await create_order(client)
        proof = proof_for(created)
        forged = sign_payment(created["gateway_order_ref"], "pay_e2e_1", secret="guess")
        proof["signature"] = forged

        response = await client.post("/api/v1/orders/verify", json=proof)

        assert response.status_code == 400
        assert response.json() == {"error": "InvalidSignature", "message": "Invalid signature"}
        assert forged not in response.text

    @pytest.mark.asyncio
    async def test_order_mismatch_even_with_valid_signature(self, client):
        created = await create_order(client)
        proof = proof_for(created)
        proof["gateway_order_ref"] = "order_other"
        proof["signature"] = sign_payment("order_other", "pay_e2e_1")

        response = await client.post("/api/v1/orders/verify", json=proof)

        assert response.status_code == 400
        assert response.json()["error"] == "OrderMismatch"

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.post("/api/v1/orders/verify", json={
            "order_id": "ORD-NOPE",
            "gateway_order_ref": "order_x",
            "gateway_payment_ref": "pay_x",
            "signature": sign_payment("order_x", "pay_x"),
        })

        assert response.status_code == 404


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_unknown_gateway_ref_is_acknowledged(self, client, pipeline):
        created = await create_order(client)
        body = webhook_body("payment.captured", "order_unknown")

        response = await client.post(
            "/api/v1/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": sign_webhook(body), "Content-Type": "application/json"},
        )

        assert 200 <= response.status_code < 300
        order = await pipeline.get_order(created["order_id"])
        assert order.status == OrderStatus.PENDING
        assert "webhook_events" not in order.metadata

    @pytest.mark.asyncio
    async def test_captured_event_confirms_order(self, client, pipeline):
        created = await create_order(client)
        body = webhook_body("payment.captured", created["gateway_order_ref"])

        response = await client.post(
            "/api/v1/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": sign_webhook(body), "X-Razorpay-Event-Id": "evt_api_1"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["event_id"] == "evt_api_1"
        assert (await pipeline.get_order(created["order_id"])).status == OrderStatus.CAPTURED

    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, client):
        body = webhook_body("payment.captured", "order_x")

        response = await client.post(
            "/api/v1/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": "0" * 64},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidSignature"

    @pytest.mark.asyncio
    async def test_missing_signature_is_400(self, client):
        response = await client.post("/api/v1/webhooks/razorpay", content=webhook_body("payment.captured", "order_x"))

        assert response.status_code == 400


class TestAdminEndpoints:

    @pytest.mark.asyncio
    async def test_captured_order_cannot_be_deleted(self, client):
        created = await create_order(client)
        await client.post("/api/v1/orders/verify", json=proof_for(created))

        response = await client.delete(f"/api/v1/admin/orders/{created['order_id']}", headers=ADMIN)

        assert response.status_code == 400
        assert response.json()["error"] == "IllegalDeletion"

    @pytest.mark.asyncio
    async def test_pending_order_can_be_deleted(self, client, pipeline):
        created = await create_order(client)

        response = await client.delete(f"/api/v1/admin/orders/{created['order_id']}", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"success": True, "order_id": created["order_id"]}
        assert await pipeline.orders.get(created["order_id"]) is None

    @pytest.mark.asyncio
    async def test_admin_routes_require_token(self, client):
        created = await create_order(client)

        missing = await client.delete(f"/api/v1/admin/orders/{created['order_id']}")
        wrong = await client.get("/api/v1/admin/orders", headers={"Authorization": "Bearer nope"})

        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_update_status(self, client):
        created = await create_order(client)

        response = await client.patch(
            f"/api/v1/admin/orders/{created['order_id']}/status",
            json={"status": "paid"},
            headers=ADMIN,
        )

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "captured"
        assert order["confirmed_via"] == "admin"

    @pytest.mark.asyncio
    async def test_update_status_rejects_unknown_status(self, client):
        created = await create_order(client)

        response = await client.patch(
            f"/api/v1/admin/orders/{created['order_id']}/status",
            json={"status": "shipped"},
            headers=ADMIN,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_status_unknown_order(self, client):
        response = await client.patch(
            "/api/v1/admin/orders/ORD-NOPE/status",
            json={"status": "failed"},
            headers=ADMIN,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_and_detail(self, client):
        first = await create_order(client)
        second = await create_order(client)

        listing = await client.get("/api/v1/admin/orders", params={"hide_old_pending": "true"}, headers=ADMIN)
        detail = await client.get(f"/api/v1/admin/orders/{first['order_id']}", headers=ADMIN)

        assert listing.status_code == 200
        ids = [o["order_id"] for o in listing.json()["orders"]]
        assert set(ids) == {first["order_id"], second["order_id"]}

        assert detail.status_code == 200
        assert detail.json()["order"]["order_id"] == first["order_id"]
        event_types = [e["event_type"] for e in detail.json()["audit"]]
        assert "order.created" in event_types

    @pytest.mark.asyncio
    async def test_audit_records_operator(self, client):
        created = await create_order(client)
        await client.patch(
            f"/api/v1/admin/orders/{created['order_id']}/status",
            json={"status": "cancelled"},
            headers=ADMIN,
        )

        detail = await client.get(f"/api/v1/admin/orders/{created['order_id']}", headers=ADMIN)

        actors = [e["actor"] for e in detail.json()["audit"]]
        assert "operator:ops-1" in actors

    @pytest.mark.asyncio
    async def test_expire_stale(self, client):
        await create_order(client)

        response = await client.post("/api/v1/admin/orders/expire-stale", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"count": 0, "expired": []}


class TestHealth:

    @pytest.mark.asyncio
    async def test_probes(self, client):
        health = await client.get("/health")
        ready = await client.get("/ready")
        live = await client.get("/live")

        assert health.status_code == 200
        assert health.json()["status"] == "healthy"
        assert health.json()["gateway_configured"] is True
        assert health.headers["X-Response-Time-Ms"]
        assert ready.json() == {"ready": True}
        assert live.json() == {"live": True}
