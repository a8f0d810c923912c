"""
Customer order routes
"""
import logging

from fastapi import APIRouter, Depends

from storefront.api.deps import CurrentUser, get_current_user, get_services
from storefront.core.exceptions import OrderNotFound
from storefront.schemas.checkout import CancelOrderRequest, OrderResponse
from storefront.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.get(order_id)
    if order.user_id != current_user.id and not current_user.is_admin:
        # Same answer as a missing order
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return OrderResponse.from_record(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    cancel_request: CancelOrderRequest,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Cancel an order. Paid orders are refunded (or the refund is queued)."""
    order = await services.checkout.cancel_order(
        order_id, cancel_request.reason, user_id=current_user.id
    )
    logger.info(f"Order {order.order_number} cancelled by user {current_user.id}")
    return OrderResponse.from_record(order)
