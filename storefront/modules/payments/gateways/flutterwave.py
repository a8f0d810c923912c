"""
Flutterwave Gateway

- Amounts in major units, 2 decimal places
- Webhook signature: hex HMAC-SHA256 of the raw body keyed with the webhook
  secret hash (FLUTTERWAVE_SECRET_HASH), not the API key. Flutterwave's own
  verif-hash header carries the secret hash itself.
- Events: charge.completed (outcome in data.status), refund.completed
- Our reference travels as tx_ref; refunds are addressed by transaction id
"""
import hashlib
import hmac
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

FLUTTERWAVE_PENDING_STATUSES = {"pending", "processing"}

FLUTTERWAVE_CHARGE_STATUSES = {
    "successful": WebhookEventKind.PAYMENT_SUCCEEDED,
    "failed": WebhookEventKind.PAYMENT_FAILED,
}


@register_gateway(PaymentProvider.FLUTTERWAVE)
class FlutterwaveGateway(PaymentGateway):

    def __init__(self, secret_key: str, base_url: str, secret_hash: str = "", **kwargs):
        super().__init__(secret_key, base_url, **kwargs)
        self.secret_hash = secret_hash

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "FlutterwaveGateway":
        return cls(
            secret_key=settings.FLUTTERWAVE_SECRET_KEY,
            base_url=settings.FLUTTERWAVE_BASE_URL,
            secret_hash=settings.FLUTTERWAVE_SECRET_HASH,
            currency=settings.STORE_CURRENCY,
            timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS,
            client=client,
        )

    def _response_ok(self, body: Dict[str, Any]) -> bool:
        # Flutterwave reports "success" / "error" as a string
        return body.get("status") == "success"

    def to_provider_amount(self, amount: Decimal) -> float:
        return float(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    def from_provider_amount(self, value) -> Decimal:
        return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    async def initialize(
        self,
        amount: Decimal,
        payer_email: str,
        reference: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializationResult:
        try:
            body = await self._request("POST", "/payments", {
                "tx_ref": reference,
                "amount": self.to_provider_amount(amount),
                "currency": self.currency,
                "redirect_url": callback_url,
                "customer": {"email": payer_email},
                "meta": metadata or {},
            })
        except PaymentProviderError as e:
            raise PaymentInitializationFailed(
                f"Flutterwave could not start payment {reference}: {e.message}",
                details=e.details,
            ) from e

        data = body.get("data") or {}
        if not data.get("link"):
            raise PaymentInitializationFailed(
                f"Flutterwave returned no payment link for {reference}",
                details={"provider": self.provider.value},
            )
        return InitializationResult(
            redirect_url=data["link"],
            provider_reference=reference,
            raw_response=body,
        )

    async def verify(self, reference: str) -> VerificationResult:
        try:
            body = await self._request(
                "GET", "/transactions/verify_by_reference", params={"tx_ref": reference}
            )
        except PaymentProviderError as e:
            raise PaymentVerificationFailed(
                f"Flutterwave verification failed for {reference}: {e.message}",
                details=e.details,
            ) from e

        data = body.get("data") or {}
        return VerificationResult(
            success=data.get("status") == "successful",
            pending=data.get("status") in FLUTTERWAVE_PENDING_STATUSES,
            amount=self.from_provider_amount(data.get("amount") or 0),
            provider_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            currency=data.get("currency"),
            message=data.get("processor_response"),
            raw_response=body,
        )

    async def refund(self, provider_reference: str, amount: Optional[Decimal] = None) -> RefundResult:
        """`provider_reference` is the Flutterwave transaction id."""
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = self.to_provider_amount(amount)

        try:
            body = await self._request("POST", f"/transactions/{provider_reference}/refund", payload)
        except PaymentProviderError as e:
            raise PaymentRefundFailed(
                f"Flutterwave refund failed for {provider_reference}: {e.message}",
                details=e.details,
            ) from e

        data = body.get("data") or {}
        refunded = data.get("amount_refunded")
        return RefundResult(
            success=True,
            refund_reference=str(data["id"]) if data.get("id") is not None else None,
            amount=self.from_provider_amount(refunded) if refunded is not None else amount,
            raw_response=body,
        )

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> bool:
        return self._hmac_matches(self.secret_hash, hashlib.sha256, payload, signature_header)

    def verify_native_signature(self, payload: bytes, header_value: Optional[str]) -> bool:
        if not self.secret_hash or not header_value:
            return False
        return hmac.compare_digest(header_value.strip().encode("utf-8"), self.secret_hash.encode("utf-8"))

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        body = json.loads(payload)
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise ValueError("Flutterwave webhook body has no data object")

        event_type = body.get("event")
        data = body["data"]
        if not event_type or data.get("id") is None:
            raise ValueError("Flutterwave webhook is missing event or data.id")

        if event_type == "charge.completed":
            kind = FLUTTERWAVE_CHARGE_STATUSES.get(data.get("status"), WebhookEventKind.IGNORED)
        elif event_type == "refund.completed":
            kind = WebhookEventKind.REFUND_PROCESSED
        else:
            kind = WebhookEventKind.IGNORED

        amount = data.get("amount_refunded") if kind == WebhookEventKind.REFUND_PROCESSED else data.get("amount")
        return WebhookEvent(
            event_id=f"{event_type}:{data['id']}",
            event_type=event_type,
            kind=kind,
            reference=data.get("tx_ref"),
            amount=self.from_provider_amount(amount) if amount is not None else None,
        )
