"""
PayStack adapter against a mocked PayStack API.
"""
import hashlib
import hmac
import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from storefront.core.exceptions import (
    PaymentInitializationFailed,
    PaymentRefundFailed,
    PaymentVerificationFailed,
    UnsupportedProvider,
)
from storefront.models import PaymentProvider
from storefront.modules.payments import GatewayRegistry, WebhookEventKind, parse_provider
from storefront.modules.payments.gateways.paystack import PayStackGateway

SECRET = "sk_test_gateway"


def make_gateway(handler) -> PayStackGateway:
    return PayStackGateway(
        secret_key=SECRET,
        base_url="https://api.paystack.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestAmounts:

    def test_kobo_conversion(self):
        gateway = PayStackGateway(secret_key=SECRET, base_url="https://api.paystack.test")

        assert gateway.to_provider_amount(Decimal("5000.00")) == 500000
        assert gateway.to_provider_amount(Decimal("10.005")) == 1001
        assert gateway.from_provider_amount(250050) == Decimal("2500.50")


class TestInitialize:

    @pytest.mark.asyncio
    async def test_sends_kobo_and_returns_redirect(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/abc", "reference": "PAY-1"},
            })

        gateway = make_gateway(handler)
        result = await gateway.initialize(Decimal("5000.00"), "buyer@example.com", "PAY-1", "https://shop/cb")

        assert result.redirect_url == "https://checkout.paystack.com/abc"
        assert result.provider_reference == "PAY-1"
        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == f"Bearer {SECRET}"
        assert seen["body"]["amount"] == 500000
        assert seen["body"]["email"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_provider_rejection(self):
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Invalid key"})

        with pytest.raises(PaymentInitializationFailed) as exc_info:
            await make_gateway(handler).initialize(Decimal("10"), "a@b.c", "PAY-2", "")

        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.asyncio
    async def test_missing_authorization_url(self):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {}})

        with pytest.raises(PaymentInitializationFailed):
            await make_gateway(handler).initialize(Decimal("10"), "a@b.c", "PAY-3", "")


class TestVerify:

    @pytest.mark.asyncio
    async def test_successful_charge(self):
        def handler(request):
            assert request.url.path == "/transaction/verify/PAY-1"
            return httpx.Response(200, json={
                "status": True,
                "data": {"id": 4099, "status": "success", "amount": 500000, "currency": "NGN",
                         "gateway_response": "Approved"},
            })

        result = await make_gateway(handler).verify("PAY-1")

        assert result.success is True
        assert result.pending is False
        assert result.amount == Decimal("5000.00")
        assert result.provider_transaction_id == "4099"
        assert result.currency == "NGN"

    @pytest.mark.asyncio
    async def test_ongoing_charge_is_pending(self):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {"id": 1, "status": "ongoing", "amount": 0}})

        result = await make_gateway(handler).verify("PAY-1")

        assert (result.success, result.pending) == (False, True)

    @pytest.mark.asyncio
    async def test_network_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PaymentVerificationFailed):
            await make_gateway(handler).verify("PAY-1")

    @pytest.mark.asyncio
    async def test_server_error_wrapped(self):
        def handler(request):
            return httpx.Response(502, text="Bad gateway")

        with pytest.raises(PaymentVerificationFailed) as exc_info:
            await make_gateway(handler).verify("PAY-1")

        assert exc_info.value.details["provider"] == "paystack"


class TestRefund:

    @pytest.mark.asyncio
    async def test_partial_refund_in_kobo(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": True, "data": {"id": 77, "amount": 150000}})

        result = await make_gateway(handler).refund("4099", Decimal("1500.00"))

        assert seen["body"] == {"transaction": "4099", "amount": 150000}
        assert result.refund_reference == "77"
        assert result.amount == Decimal("1500.00")

    @pytest.mark.asyncio
    async def test_full_refund_omits_amount(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": True, "data": {"id": 78}})

        await make_gateway(handler).refund("4099")

        assert seen["body"] == {"transaction": "4099"}

    @pytest.mark.asyncio
    async def test_refund_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Transaction has been fully reversed"})

        with pytest.raises(PaymentRefundFailed):
            await make_gateway(handler).refund("4099")


class TestWebhooks:

    def setup_method(self):
        self.gateway = PayStackGateway(secret_key=SECRET, base_url="https://api.paystack.test")

    def test_signature(self):
        payload = b'{"event":"charge.success"}'
        good = hmac.new(SECRET.encode(), payload, hashlib.sha512).hexdigest()

        assert self.gateway.verify_signature(payload, good)
        assert self.gateway.verify_signature(payload, good.upper())
        assert not self.gateway.verify_signature(payload + b" ", good)
        assert not self.gateway.verify_signature(payload, None)

    def test_charge_success(self):
        payload = json.dumps({
            "event": "charge.success",
            "data": {"id": 302961, "reference": "PAY-1", "amount": 500000},
        }).encode()

        event = self.gateway.parse_webhook(payload)

        assert event.event_id == "charge.success:302961"
        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.reference == "PAY-1"
        assert event.amount == Decimal("5000.00")

    def test_refund_processed_uses_transaction_reference(self):
        payload = json.dumps({
            "event": "refund.processed",
            "data": {"id": 9, "transaction_reference": "PAY-1", "amount": 100000},
        }).encode()

        event = self.gateway.parse_webhook(payload)

        assert event.kind == WebhookEventKind.REFUND_PROCESSED
        assert event.reference == "PAY-1"

    def test_unknown_event_ignored(self):
        payload = json.dumps({"event": "subscription.create", "data": {"id": 1}}).encode()

        assert self.gateway.parse_webhook(payload).kind == WebhookEventKind.IGNORED

    @pytest.mark.parametrize("payload", [b"[]", b'{"event": "charge.success"}', b'{"data": {"id": 1}}'])
    def test_malformed(self, payload):
        with pytest.raises(ValueError):
            self.gateway.parse_webhook(payload)


class TestRegistry:

    def test_parse_provider(self):
        assert parse_provider(" PayStack ") == PaymentProvider.PAYSTACK
        with pytest.raises(UnsupportedProvider):
            parse_provider("paypal")

    def test_unconfigured_provider_unavailable(self):
        settings = SimpleNamespace(
            PAYSTACK_SECRET_KEY="",
            PAYSTACK_BASE_URL="https://api.paystack.test",
            STORE_CURRENCY="NGN",
            PAYMENT_HTTP_TIMEOUT_SECONDS=5.0,
        )
        registry = GatewayRegistry(settings)

        with pytest.raises(UnsupportedProvider):
            registry.get("paystack")

    def test_builds_from_settings(self):
        settings = SimpleNamespace(
            PAYSTACK_SECRET_KEY=SECRET,
            PAYSTACK_BASE_URL="https://api.paystack.test/",
            STORE_CURRENCY="NGN",
            PAYMENT_HTTP_TIMEOUT_SECONDS=5.0,
        )
        registry = GatewayRegistry(settings)

        gateway = registry.get(PaymentProvider.PAYSTACK)

        assert isinstance(gateway, PayStackGateway)
        assert gateway.base_url == "https://api.paystack.test"
        assert registry.get("paystack") is gateway
