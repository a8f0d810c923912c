"""
Base Payment Gateway Interface

Every provider implements this contract:
- initialize: start a payment, returning the provider's redirect URL
- verify: read back a payment's outcome (safe to repeat)
- refund: full or partial refund
- verify_signature / parse_webhook: authenticate and normalize webhooks

Amounts cross this boundary as Decimal in the store's base currency. Each
provider converts to its own wire unit.
"""
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from storefront.core.exceptions import PaymentProviderError
from storefront.models import PaymentProvider

logger = logging.getLogger(__name__)


# =============================================================================
# Provider-Agnostic Data Classes
# =============================================================================

@dataclass
class InitializationResult:
    redirect_url: str
    provider_reference: str
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationResult:
    success: bool
    amount: Decimal
    # Customer has not finished paying yet; neither success nor failure
    pending: bool = False
    provider_transaction_id: Optional[str] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    success: bool
    refund_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


class WebhookEventKind(str, Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    IGNORED = "IGNORED"


@dataclass
class WebhookEvent:
    event_id: str
    event_type: str
    kind: WebhookEventKind
    reference: Optional[str]
    amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "kind": self.kind.value,
            "reference": self.reference,
            "amount": str(self.amount) if self.amount is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookEvent":
        return cls(
            event_id=data["event_id"],
            event_type=data["event_type"],
            kind=WebhookEventKind(data["kind"]),
            reference=data.get("reference"),
            amount=Decimal(data["amount"]) if data.get("amount") is not None else None,
        )


# =============================================================================
# Base Gateway
# =============================================================================

class PaymentGateway(ABC):
    """
    Abstract base class for payment providers.

    `client` may be injected (tests pass one built on httpx.MockTransport);
    otherwise the gateway owns an AsyncClient and closes it in close().
    """

    provider: PaymentProvider

    def __init__(
        self,
        secret_key: str,
        base_url: str,
        currency: str = "NGN",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    @abstractmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "PaymentGateway":
        pass

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    # ----- Contract -----

    @abstractmethod
    async def initialize(
        self,
        amount: Decimal,
        payer_email: str,
        reference: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializationResult:
        pass

    @abstractmethod
    async def verify(self, reference: str) -> VerificationResult:
        pass

    @abstractmethod
    async def refund(self, provider_reference: str, amount: Optional[Decimal] = None) -> RefundResult:
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> bool:
        pass

    def verify_native_signature(self, payload: bytes, header_value: Optional[str]) -> bool:
        """Check the provider's own webhook header. Same scheme as verify_signature unless overridden."""
        return self.verify_signature(payload, header_value)

    @abstractmethod
    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        """Normalize a webhook body. Raises ValueError on a malformed body."""
        pass

    @abstractmethod
    def to_provider_amount(self, amount: Decimal):
        pass

    @abstractmethod
    def from_provider_amount(self, value) -> Decimal:
        pass

    # ----- Shared plumbing -----

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _response_ok(self, body: Dict[str, Any]) -> bool:
        return bool(body.get("status"))

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method, url, json=payload, params=params, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"{self.provider.value} request {method} {path} failed: {e}")
            raise PaymentProviderError(
                f"{self.provider.value} request failed: {e.__class__.__name__}",
                provider=self.provider.value,
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or not self._response_ok(body):
            message = body.get("message") or f"{self.provider.value} request failed"
            logger.warning(
                f"{self.provider.value} {method} {path} returned {response.status_code}: {message}"
            )
            raise PaymentProviderError(
                message,
                provider=self.provider.value,
                status_code=response.status_code,
            )
        return body

    @staticmethod
    def _hmac_matches(secret: str, digestmod, payload: bytes, signature_header: Optional[str]) -> bool:
        if not secret or not signature_header:
            return False
        expected = hmac.new(secret.encode("utf-8"), payload, digestmod).hexdigest()
        return hmac.compare_digest(expected, signature_header.strip().lower())

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "PaymentGateway",
    "InitializationResult",
    "VerificationResult",
    "RefundResult",
    "WebhookEvent",
    "WebhookEventKind",
]
