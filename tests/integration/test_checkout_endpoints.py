"""
Checkout, order and admin endpoints over ASGI against the in-memory store.
"""
from decimal import Decimal

import pytest

from storefront.core.exceptions import PaymentVerificationFailed

from conftest import bearer, stock_of


async def place_checkout(client, headers, quantity=2, **extra):
    body = {
        "items": [{"product_id": 1, "quantity": quantity}],
        "billing": {"email": "buyer@example.com"},
        **extra,
    }
    return await client.post("/api/checkout", json=body, headers=headers)


class TestCheckoutEndpoint:

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client):
        resp = await client.post("/api/checkout", json={"items": []})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_rejects_garbage_token(self, client):
        resp = await client.post(
            "/api/checkout",
            json={"items": []},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_checkout_returns_payment_url(self, client, user_headers, seed):
        await seed(1, 5)

        resp = await place_checkout(client, user_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert Decimal(str(body["total"])) == Decimal("5000.00")
        assert body["currency"] == "NGN"
        assert body["reference"].startswith("PAY-")
        assert body["payment_url"].endswith(body["reference"])

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, client, user_headers, seed):
        await seed(1, 1)

        resp = await place_checkout(client, user_headers, quantity=3)

        assert resp.status_code == 400
        assert resp.json()["error"] == "insufficient_stock"
        assert resp.json()["product_id"] == 1

    @pytest.mark.asyncio
    async def test_empty_cart(self, client, user_headers):
        resp = await client.post("/api/checkout", json={"items": []}, headers=user_headers)

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_cart"

    @pytest.mark.asyncio
    async def test_initialization_failure(self, client, user_headers, gateway, seed, store):
        from storefront.core.exceptions import PaymentInitializationFailed

        await seed(1, 5)
        gateway.initialize_error = PaymentInitializationFailed("provider down")

        resp = await place_checkout(client, user_headers)

        assert resp.status_code == 400
        assert resp.json()["error"] == "payment_initialization_failed"
        assert (await stock_of(store, 1)).available_quantity == 5


class TestVerifyEndpoint:

    @pytest.mark.asyncio
    async def test_verify_settles_once(self, client, user_headers, gateway, seed, store):
        await seed(1, 5)
        reference = (await place_checkout(client, user_headers)).json()["reference"]

        first = await client.get(f"/api/checkout/verify/{reference}")
        second = await client.get(f"/api/checkout/verify/{reference}")

        assert first.json()["status"] == "PAID"
        assert first.json()["order_status"] == "PROCESSING"
        assert second.json()["status"] == "ALREADY_SETTLED"
        assert len(gateway.verify_calls) == 1
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (3, 0)

    @pytest.mark.asyncio
    async def test_unknown_reference(self, client):
        resp = await client.get("/api/checkout/verify/PAY-NOPE")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, client, user_headers, gateway, seed):
        await seed(1, 5)
        reference = (await place_checkout(client, user_headers)).json()["reference"]
        gateway.verify_error = PaymentVerificationFailed("timeout talking to PayStack")

        resp = await client.get(f"/api/checkout/verify/{reference}")

        assert resp.status_code == 502
        assert resp.json()["error"] == "payment_verification_failed"
        assert "timeout" not in resp.json()["message"]


class TestOrderEndpoints:

    @pytest.mark.asyncio
    async def test_owner_and_admin_can_read(self, client, user_headers, admin_headers, seed):
        await seed(1, 5)
        order_id = (await place_checkout(client, user_headers)).json()["order_id"]

        mine = await client.get(f"/api/orders/{order_id}", headers=user_headers)
        as_admin = await client.get(f"/api/orders/{order_id}", headers=admin_headers)

        assert mine.status_code == 200
        assert mine.json()["status"] == "PENDING"
        assert mine.json()["items"][0]["quantity"] == 2
        assert as_admin.status_code == 200

    @pytest.mark.asyncio
    async def test_other_user_gets_not_found(self, client, user_headers, seed):
        await seed(1, 5)
        order_id = (await place_checkout(client, user_headers)).json()["order_id"]

        resp = await client.get(f"/api/orders/{order_id}", headers=bearer("user-2"))

        assert resp.status_code == 404
        assert resp.json()["error"] == "order_not_found"

    @pytest.mark.asyncio
    async def test_cancel_pending_order(self, client, user_headers, seed, store):
        await seed(1, 5)
        order_id = (await place_checkout(client, user_headers)).json()["order_id"]

        resp = await client.post(f"/api/orders/{order_id}/cancel", json={}, headers=user_headers)

        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        assert resp.json()["status_message"] == "Cancelled by customer"
        assert (await stock_of(store, 1)).available_quantity == 5

    @pytest.mark.asyncio
    async def test_cancel_twice_conflicts(self, client, user_headers, seed):
        await seed(1, 5)
        order_id = (await place_checkout(client, user_headers)).json()["order_id"]
        await client.post(f"/api/orders/{order_id}/cancel", json={}, headers=user_headers)

        resp = await client.post(f"/api/orders/{order_id}/cancel", json={}, headers=user_headers)

        assert resp.status_code == 409
        assert resp.json()["error"] == "illegal_transition"


class TestAdminEndpoints:

    @pytest.mark.asyncio
    async def test_requires_admin_role(self, client, user_headers):
        resp = await client.get("/api/admin/inventory/1", headers=user_headers)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_fulfilment_and_refund(self, client, user_headers, admin_headers, gateway, seed):
        await seed(1, 5)
        checkout = (await place_checkout(client, user_headers)).json()
        await client.get(f"/api/checkout/verify/{checkout['reference']}")

        advanced = await client.post(
            f"/api/admin/orders/{checkout['order_id']}/advance",
            json={"status": "ready_for_shipping"},
            headers=admin_headers,
        )
        refunded = await client.post(
            f"/api/admin/orders/{checkout['order_id']}/refund",
            json={"amount": "1000.00"},
            headers=admin_headers,
        )

        assert advanced.json()["status"] == "READY_FOR_SHIPPING"
        assert refunded.status_code == 200
        assert refunded.json()["payment_status"] == "SUCCESSFUL"
        assert gateway.refunds[-1][1] == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_unknown_status(self, client, admin_headers):
        resp = await client.post(
            "/api/admin/orders/whatever/advance",
            json={"status": "teleported"},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_confirm_offline_payment(self, client, user_headers, admin_headers, seed, store):
        await seed(1, 5)
        checkout = (await client.post(
            "/api/checkout",
            json={"items": [{"product_id": 1, "quantity": 1}], "payment_method": "Bank_Transfer"},
            headers=user_headers,
        )).json()
        assert checkout["payment_url"] is None

        resp = await client.post(
            f"/api/admin/orders/{checkout['order_id']}/confirm-payment",
            headers=admin_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["payment_status"] == "SUCCESSFUL"
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (4, 0)

    @pytest.mark.asyncio
    async def test_stock_adjustment_and_log(self, client, admin_headers, seed):
        await seed(1, 5)

        resp = await client.post(
            "/api/admin/inventory/1/adjust",
            json={"delta": -2, "reason": "damaged in storage"},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["available_quantity"] == 3
        assert body["log"][0]["delta"] == -2
        assert body["log"][0]["kind"] == "ADJUST"
        assert "damaged in storage" in body["log"][0]["reason"]

    @pytest.mark.asyncio
    async def test_stock_adjustment_below_zero(self, client, admin_headers, seed):
        await seed(1, 1)

        resp = await client.post(
            "/api/admin/inventory/1/adjust",
            json={"delta": -2, "reason": "recount"},
            headers=admin_headers,
        )

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_stock_adjustment_validation(self, client, admin_headers, seed):
        await seed(1, 1)

        zero = await client.post(
            "/api/admin/inventory/1/adjust", json={"delta": 0, "reason": "noop"}, headers=admin_headers
        )
        unknown = await client.post(
            "/api/admin/inventory/99/adjust", json={"delta": 1, "reason": "found one"}, headers=admin_headers
        )

        assert zero.status_code == 422
        assert unknown.status_code == 404

    @pytest.mark.asyncio
    async def test_low_stock_report(self, client, user_headers, admin_headers, seed):
        await seed(1, 7)
        await seed(2, 40)
        await seed(3, 1)
        await place_checkout(client, user_headers, quantity=3)

        resp = await client.get("/api/admin/inventory/low-stock", headers=admin_headers)
        forbidden = await client.get("/api/admin/inventory/low-stock", headers=user_headers)

        assert resp.status_code == 200
        items = resp.json()["items"]
        assert [(i["product_id"], i["available_quantity"]) for i in items] == [(3, 1), (1, 4)]
        assert items[1]["reserved_quantity"] == 3
        assert items[1]["low_stock_threshold"] == 5
        assert forbidden.status_code == 403


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_reservations(self, client, user_headers, seed):
        await seed(1, 5)
        await place_checkout(client, user_headers)

        resp = await client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["storage"] == "memory"
        assert body["reservations"]["active_reservations"] == 1
