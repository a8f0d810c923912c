"""
PayStack Gateway

- Amounts in kobo (x100, integer, ROUND_HALF_UP)
- Webhook signature: hex HMAC-SHA512 of the raw body keyed with the secret key
- Events: charge.success, charge.failed, refund.processed
"""
import hashlib
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import httpx

from storefront.core.exceptions import (
    PaymentInitializationFailed,
    PaymentProviderError,
    PaymentRefundFailed,
    PaymentVerificationFailed,
)
from storefront.models import PaymentProvider
from storefront.modules.payments import register_gateway
from storefront.modules.payments.gateways.base import (
    InitializationResult,
    PaymentGateway,
    RefundResult,
    VerificationResult,
    WebhookEvent,
    WebhookEventKind,
)

logger = logging.getLogger(__name__)

# Transaction states that are not yet a final outcome
PAYSTACK_PENDING_STATUSES = {"abandoned", "ongoing", "pending", "processing", "queued"}

PAYSTACK_EVENT_KINDS = {
    "charge.success": WebhookEventKind.PAYMENT_SUCCEEDED,
    "charge.failed": WebhookEventKind.PAYMENT_FAILED,
    "refund.processed": WebhookEventKind.REFUND_PROCESSED,
}


@register_gateway(PaymentProvider.PAYSTACK)
class PayStackGateway(PaymentGateway):

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "PayStackGateway":
        return cls(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            currency=settings.STORE_CURRENCY,
            timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS,
            client=client,
        )

    def to_provider_amount(self, amount: Decimal) -> int:
        return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def from_provider_amount(self, value) -> Decimal:
        return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))

    async def initialize(
        self,
        amount: Decimal,
        payer_email: str,
        reference: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializationResult:
        try:
            body = await self._request("POST", "/transaction/initialize", {
                "amount": self.to_provider_amount(amount),
                "email": payer_email,
                "reference": reference,
                "currency": self.currency,
                "callback_url": callback_url,
                "metadata": metadata or {},
            })
        except PaymentProviderError as e:
            raise PaymentInitializationFailed(
                f"PayStack could not start payment {reference}: {e.message}",
                details=e.details,
            ) from e

        data = body.get("data") or {}
        if not data.get("authorization_url"):
            raise PaymentInitializationFailed(
                f"PayStack returned no authorization URL for {reference}",
                details={"provider": self.provider.value},
            )
        return InitializationResult(
            redirect_url=data["authorization_url"],
            provider_reference=data.get("reference") or reference,
            raw_response=body,
        )

    async def verify(self, reference: str) -> VerificationResult:
        try:
            body = await self._request("GET", f"/transaction/verify/{reference}")
        except PaymentProviderError as e:
            raise PaymentVerificationFailed(
                f"PayStack verification failed for {reference}: {e.message}",
                details=e.details,
            ) from e

        data = body.get("data") or {}
        return VerificationResult(
            success=data.get("status") == "success",
            pending=data.get("status") in PAYSTACK_PENDING_STATUSES,
            amount=self.from_provider_amount(data.get("amount") or 0),
            provider_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            currency=data.get("currency"),
            message=data.get("gateway_response"),
            raw_response=body,
        )

    async def refund(self, provider_reference: str, amount: Optional[Decimal] = None) -> RefundResult:
        payload: Dict[str, Any] = {"transaction": provider_reference}
        if amount is not None:
            payload["amount"] = self.to_provider_amount(amount)

        try:
            body = await self._request("POST", "/refund", payload)
        except PaymentProviderError as e:
            raise PaymentRefundFailed(
                f"PayStack refund failed for {provider_reference}: {e.message}",
                details=e.details,
            ) from e

        data = body.get("data") or {}
        refunded = data.get("amount")
        return RefundResult(
            success=True,
            refund_reference=str(data["id"]) if data.get("id") is not None else None,
            amount=self.from_provider_amount(refunded) if refunded is not None else amount,
            raw_response=body,
        )

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> bool:
        return self._hmac_matches(self.secret_key, hashlib.sha512, payload, signature_header)

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        body = json.loads(payload)
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise ValueError("PayStack webhook body has no data object")

        event_type = body.get("event")
        data = body["data"]
        if not event_type or data.get("id") is None:
            raise ValueError("PayStack webhook is missing event or data.id")

        kind = PAYSTACK_EVENT_KINDS.get(event_type, WebhookEventKind.IGNORED)
        if kind == WebhookEventKind.REFUND_PROCESSED:
            reference = data.get("transaction_reference") or data.get("reference")
        else:
            reference = data.get("reference")

        amount = data.get("amount")
        return WebhookEvent(
            event_id=f"{event_type}:{data['id']}",
            event_type=event_type,
            kind=kind,
            reference=reference,
            amount=self.from_provider_amount(amount) if amount is not None else None,
        )
