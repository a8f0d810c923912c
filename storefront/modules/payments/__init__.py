"""
Payment Gateway Registry

- @register_gateway maps a PaymentProvider to its implementation class
- GatewayRegistry builds configured instances from settings
- Adding a provider means adding one module under gateways/ and importing it
  at the bottom of this file
"""
import logging
from typing import Dict, Optional, Type

import httpx

from storefront.core.exceptions import UnsupportedProvider
from storefront.models import PaymentProvider
from storefront.modules.payments.gateways.base import (
    PaymentGateway,
    InitializationResult,
    VerificationResult,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)

logger = logging.getLogger(__name__)

# Registry of gateway implementations
_GATEWAY_REGISTRY: Dict[PaymentProvider, Type[PaymentGateway]] = {}


def register_gateway(provider: PaymentProvider):
    """
    Decorator to register a gateway implementation.

    Usage:
        @register_gateway(PaymentProvider.PAYSTACK)
        class PayStackGateway(PaymentGateway):
            ...
    """
    def decorator(cls: Type[PaymentGateway]):
        _GATEWAY_REGISTRY[provider] = cls
        cls.provider = provider
        logger.debug(f"Registered payment gateway: {provider.value} -> {cls.__name__}")
        return cls
    return decorator


def parse_provider(key: Optional[str]) -> PaymentProvider:
    """Map a provider key (header, query param, payment method) to the enum."""
    try:
        return PaymentProvider((key or "").strip().lower())
    except ValueError:
        raise UnsupportedProvider(f"Unsupported payment provider: {key}", details={"provider": key})


class GatewayRegistry:
    """
    Holds one instance per configured provider.

    Instances can be passed in directly (tests); otherwise they are built
    lazily from settings on first use.
    """

    def __init__(
        self,
        settings=None,
        gateways: Optional[Dict[PaymentProvider, PaymentGateway]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._client = client
        self._gateways: Dict[PaymentProvider, PaymentGateway] = dict(gateways or {})

    def get(self, provider) -> PaymentGateway:
        """
        Raises:
            UnsupportedProvider: unknown key, no implementation, or missing credentials.
        """
        if not isinstance(provider, PaymentProvider):
            provider = parse_provider(provider)

        gateway = self._gateways.get(provider)
        if gateway is None:
            gateway_cls = _GATEWAY_REGISTRY.get(provider)
            if gateway_cls is None or self._settings is None:
                raise UnsupportedProvider(
                    f"No gateway available for provider: {provider.value}",
                    details={"provider": provider.value},
                )
            gateway = gateway_cls.from_settings(self._settings, client=self._client)
            self._gateways[provider] = gateway

        if not gateway.is_configured:
            raise UnsupportedProvider(
                f"Payment provider {provider.value} is not configured",
                details={"provider": provider.value},
            )
        return gateway

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()


# Import gateways to trigger registration
# These imports must be at the bottom to avoid circular imports
from storefront.modules.payments.gateways.paystack import PayStackGateway  # noqa: E402, F401
from storefront.modules.payments.gateways.flutterwave import FlutterwaveGateway  # noqa: E402, F401
