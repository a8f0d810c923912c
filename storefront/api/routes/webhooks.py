"""
Payment Webhook Route

SECURITY:
- Signature checked against the raw body before anything is parsed
- Invalid signatures are logged and answered 401
- Duplicates are acknowledged 200 so the provider stops retrying
- Internal detail is never returned
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from storefront.api.deps import get_services
from storefront.core.rate_limit import limiter
from storefront.schemas.checkout import WebhookResponse
from storefront.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment", response_model=WebhookResponse)
@limiter.exempt
async def payment_webhook(
    request: Request,
    x_payment_provider: Optional[str] = Header(None),
    x_webhook_signature: Optional[str] = Header(None),
    x_paystack_signature: Optional[str] = Header(None),
    verif_hash: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """
    Receive a provider webhook.

    The generic x-webhook-signature header wins; the providers' native
    headers (x-paystack-signature, verif-hash) are accepted as well and
    checked with the provider's own scheme.
    """
    native = not x_webhook_signature
    signature = x_webhook_signature or x_paystack_signature or verif_hash
    if not x_payment_provider:
        raise HTTPException(status_code=400, detail="Missing x-payment-provider header")
    if not signature:
        logger.warning(f"SECURITY: {x_payment_provider} webhook without signature rejected")
        raise HTTPException(status_code=400, detail="Missing signature")

    payload = await request.body()
    try:
        outcome = await services.checkout.handle_webhook(
            x_payment_provider, payload, signature, native=native
        )
    except ValueError as e:
        logger.warning(f"Malformed {x_payment_provider} webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")

    return WebhookResponse(status=outcome.value.lower())
