"""HTTP-level tests: identity headers, error mapping and the main flows.

The app is served in-process through httpx's ASGI transport with the
service dependencies overridden, so no database server, Redis or Stripe
account is needed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
from fastapi import FastAPI

from judicature_escrow.api.deps import (
    get_escrow_service,
    get_payment_request_service,
    get_webhook_service,
)
from judicature_escrow.api.routes import health
from judicature_escrow.infrastructure import redis_client
from judicature_escrow.infrastructure.redis_client import WebhookDedupStore
from judicature_escrow.main import create_app
from judicature_escrow.services.escrow_service import EscrowService
from judicature_escrow.services.payment_request_service import PaymentRequestService
from judicature_escrow.services.webhook_service import WebhookService

SECRET = "whsec_api_test"

CLIENT = {"X-User-Id": "client-1", "X-User-Role": "client"}
LAWYER = {"X-User-Id": "lawyer-1", "X-User-Role": "lawyer"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
STRANGER = {"X-User-Id": "someone-else", "X-User-Role": "client"}


@pytest.fixture
def app(
    escrow: EscrowService,
    requests_service: PaymentRequestService,
    gateway: Any,
    fake_redis: Any,
) -> FastAPI:
    application = create_app()
    webhooks = WebhookService(gateway, WebhookDedupStore(fake_redis), escrow, SECRET)
    application.dependency_overrides[get_escrow_service] = lambda: escrow
    application.dependency_overrides[get_payment_request_service] = lambda: requests_service
    application.dependency_overrides[get_webhook_service] = lambda: webhooks
    return application


@pytest.fixture
async def api(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _create_order(api: httpx.AsyncClient, amount: int = 10000) -> dict[str, Any]:
    response = await api.post(
        "/api/v1/orders",
        json={"payee_id": "lawyer-1", "amount": amount, "description": "Draft a will"},
        headers=CLIENT,
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestIdentity:
    @pytest.mark.asyncio
    async def test_missing_headers(self, api: httpx.AsyncClient) -> None:
        response = await api.get("/api/v1/orders")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_role(self, api: httpx.AsyncClient) -> None:
        response = await api.get(
            "/api/v1/orders", headers={"X-User-Id": "x", "X-User-Role": "judge"}
        )
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, api: httpx.AsyncClient) -> None:
        response = await api.get(
            "/api/v1/orders", headers={**CLIENT, "X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"


class TestOrderRoutes:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, api: httpx.AsyncClient) -> None:
        created = await _create_order(api)

        assert created["status"] == "pending"
        assert created["escrow_status"] == "unfunded"
        assert created["payer_id"] == "client-1"
        assert created["platform_fee"] == 1000
        assert created["payee_net_amount"] == 9000

        fetched = await api.get(f"/api/v1/orders/{created['order_id']}", headers=LAWYER)
        assert fetched.status_code == 200
        assert fetched.json()["order_id"] == created["order_id"]

    @pytest.mark.asyncio
    async def test_invalid_body(self, api: httpx.AsyncClient) -> None:
        response = await api.post(
            "/api/v1/orders", json={"payee_id": "lawyer-1", "amount": 0}, headers=CLIENT
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_order(self, api: httpx.AsyncClient) -> None:
        response = await api.get("/api/v1/orders/ORD-NOPE", headers=CLIENT)
        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_non_participant_is_forbidden(self, api: httpx.AsyncClient) -> None:
        created = await _create_order(api)
        response = await api.get(f"/api/v1/orders/{created['order_id']}", headers=STRANGER)
        assert response.status_code == 403
        assert response.json()["error"] == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_list_is_scoped_to_caller(self, api: httpx.AsyncClient) -> None:
        await _create_order(api)
        await _create_order(api, amount=20000)

        mine = (await api.get("/api/v1/orders", headers=CLIENT)).json()
        theirs = (await api.get("/api/v1/orders", headers=STRANGER)).json()

        assert mine["total"] == 2
        assert theirs["total"] == 0

    @pytest.mark.asyncio
    async def test_declined_card_is_payment_required(
        self, api: httpx.AsyncClient, gateway: Any
    ) -> None:
        created = await _create_order(api)
        gateway.decline = "card_declined"

        response = await api.post(
            f"/api/v1/orders/{created['order_id']}/capture",
            json={"payment_method_ref": "pm_card_visa"},
            headers=CLIENT,
        )

        assert response.status_code == 402
        assert response.json()["details"]["reason_code"] == "card_declined"

    @pytest.mark.asyncio
    async def test_full_flow(self, api: httpx.AsyncClient) -> None:
        order_id = (await _create_order(api))["order_id"]
        base = f"/api/v1/orders/{order_id}"

        paid = await api.post(
            f"{base}/capture", json={"payment_method_ref": "pm_card_visa"}, headers=CLIENT
        )
        assert paid.json()["escrow_status"] == "held"

        deliverable = await api.post(
            f"{base}/deliverables",
            json={"file_ref": "blob://opinion", "file_name": "opinion.pdf"},
            headers=LAWYER,
        )
        assert deliverable.status_code == 201

        review = await api.post(
            f"{base}/deliverables/{deliverable.json()['id']}/review",
            json={"decision": "accept"},
            headers=CLIENT,
        )
        assert review.json()["status"] == "accepted"

        released = await api.post(f"{base}/release", headers=CLIENT)
        assert released.status_code == 200
        assert released.json()["escrow_status"] == "released"

        again = await api.post(f"{base}/release", headers=CLIENT)
        assert again.status_code == 200

        status = (await api.get(f"{base}/status", headers=CLIENT)).json()
        assert status["status"] == "completed"
        assert status["escrow_status"] == "released"

        events = (await api.get(f"{base}/events", headers=ADMIN)).json()
        assert events[0]["event_type"] == "ORDER_CREATED"
        assert events[-1]["event_type"] == "FUNDS_RELEASED"

    @pytest.mark.asyncio
    async def test_release_before_completion_conflicts(self, api: httpx.AsyncClient) -> None:
        order_id = (await _create_order(api))["order_id"]
        response = await api.post(f"/api/v1/orders/{order_id}/release", headers=CLIENT)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_refund_requires_admin(self, api: httpx.AsyncClient) -> None:
        order_id = (await _create_order(api))["order_id"]
        await api.post(
            f"/api/v1/orders/{order_id}/capture",
            json={"payment_method_ref": "pm_card_visa"},
            headers=CLIENT,
        )

        denied = await api.post(f"/api/v1/orders/{order_id}/refund", headers=CLIENT)
        assert denied.status_code == 403

        refunded = await api.post(
            f"/api/v1/orders/{order_id}/refund", json={"reason": "duplicate"}, headers=ADMIN
        )
        assert refunded.status_code == 200
        assert refunded.json()["status"] == "refunded"

    @pytest.mark.asyncio
    async def test_attention_queue(
        self, api: httpx.AsyncClient, escrow: EscrowService, admin: Any
    ) -> None:
        order_id = (await _create_order(api))["order_id"]
        order = await escrow.get_order(order_id)
        await escrow.flag_attention(order, "orphaned charge", admin)

        listed = await api.get("/api/v1/orders/attention", headers=ADMIN)
        assert listed.status_code == 200
        assert [o["order_id"] for o in listed.json()] == [order_id]
        assert listed.json()[0]["needs_attention"] is True

        denied = await api.get("/api/v1/orders/attention", headers=CLIENT)
        assert denied.status_code == 403


class TestPaymentRequestRoutes:
    @pytest.mark.asyncio
    async def test_propose_accept_pay(self, api: httpx.AsyncClient) -> None:
        created = await api.post(
            "/api/v1/payment-requests",
            json={
                "counterparty_id": "client-1",
                "amount": 50000,
                "service_type": "consultation",
                "description": "Consultation on a boundary dispute",
            },
            headers=LAWYER,
        )
        assert created.status_code == 201, created.text
        request_id = created.json()["request_id"]

        accepted = await api.post(
            f"/api/v1/payment-requests/{request_id}/respond",
            json={"action": "accept"},
            headers=CLIENT,
        )
        assert accepted.json()["status"] == "accepted"

        order = await api.post(
            f"/api/v1/payment-requests/{request_id}/pay",
            json={"payment_method_ref": "pm_card_visa"},
            headers=CLIENT,
        )
        assert order.status_code == 200
        assert order.json()["payment_request_id"] == request_id
        assert order.json()["status"] == "paid"

        fetched = await api.get(f"/api/v1/payment-requests/{request_id}", headers=LAWYER)
        assert fetched.json()["status"] == "paid"

    @pytest.mark.asyncio
    async def test_client_cannot_propose(self, api: httpx.AsyncClient) -> None:
        response = await api.post(
            "/api/v1/payment-requests",
            json={
                "counterparty_id": "client-1",
                "amount": 50000,
                "service_type": "consultation",
                "description": "Self-proposed",
            },
            headers=CLIENT,
        )
        assert response.status_code == 403


class TestWebhookRoute:
    @pytest.mark.asyncio
    async def test_bad_signature(self, api: httpx.AsyncClient) -> None:
        response = await api.post(
            "/api/v1/webhooks/stripe",
            content=b'{"id": "evt_1"}',
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_signed_event(self, api: httpx.AsyncClient) -> None:
        body = json.dumps(
            {
                "id": "evt_api",
                "object": "event",
                "type": "customer.created",
                "data": {"object": {"id": "cus_1"}},
            }
        )
        ts = int(time.time())
        digest = hmac.new(SECRET.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()

        response = await api.post(
            "/api/v1/webhooks/stripe",
            content=body.encode(),
            headers={"Stripe-Signature": f"t={ts},v1={digest}"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": "true", "outcome": "ignored"}


class TestHealth:
    @pytest.mark.asyncio
    async def test_degraded_without_redis(
        self, api: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _ping() -> None:
            return None

        monkeypatch.setattr(health, "ping_db", _ping)
        monkeypatch.setattr(redis_client, "_redis_client", None)

        response = await api.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["database"] == "healthy"
        assert body["redis"].startswith("unhealthy")
