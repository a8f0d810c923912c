"""
Checkout API Routes

1. POST /checkout: reserve stock, create the order, start payment
2. GET /checkout/verify/{reference}: callback / polling fallback when a
   webhook is late or lost
3. Rate limited to prevent abuse
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from storefront.api.deps import CurrentUser, get_current_user, get_services
from storefront.core.config import settings
from storefront.core.rate_limit import limiter
from storefront.schemas.checkout import CheckoutRequest, CheckoutResponse, SettlementResponse
from storefront.services.checkout import CartItem
from storefront.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=CheckoutResponse)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def create_checkout(
    request: Request,
    checkout_request: CheckoutRequest,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Start checkout for the posted cart.

    Prices come from the catalog; the client never supplies them. Online
    methods return `payment_url` for the provider's hosted page.
    """
    result = await services.checkout.checkout(
        user_id=current_user.id,
        cart_items=[CartItem(item.product_id, item.quantity) for item in checkout_request.items],
        shipping_info=checkout_request.shipping,
        billing_info=checkout_request.billing,
        payment_method=checkout_request.payment_method,
    )
    return CheckoutResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        total=result.total,
        currency=result.currency,
        reference=result.reference,
        payment_url=result.redirect_url,
    )


@router.get("/verify/{reference}", response_model=SettlementResponse)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def verify_payment(
    request: Request,
    reference: str,
    provider: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Verify with the provider and settle; safe to call repeatedly."""
    result = await services.checkout.complete_payment(reference, provider)
    return SettlementResponse(
        status=result.outcome.value,
        reference=result.reference,
        order_id=result.order_id,
        order_status=result.order_status,
        payment_status=result.payment_status,
    )
