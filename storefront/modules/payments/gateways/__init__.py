from storefront.modules.payments.gateways.base import (
    PaymentGateway,
    InitializationResult,
    VerificationResult,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)
