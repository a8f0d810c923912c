"""
Admin routes: fulfilment, refunds, offline payments, stock corrections,
low-stock report

All endpoints require a token with the admin role.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from storefront.api.deps import CurrentUser, get_current_admin, get_services
from storefront.models import OrderStatus
from storefront.schemas.checkout import (
    AdvanceOrderRequest,
    InventoryLogResponse,
    LowStockItem,
    LowStockResponse,
    OrderResponse,
    RefundRequest,
    StockAdjustmentRequest,
    StockResponse,
)
from storefront.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/orders/{order_id}/advance", response_model=OrderResponse)
async def advance_order(
    order_id: str,
    advance_request: AdvanceOrderRequest,
    admin: CurrentUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    try:
        to_status = OrderStatus(advance_request.status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown order status: {advance_request.status}")

    order = await services.orders.advance(order_id, to_status)
    logger.info(f"Admin {admin.id} advanced order {order.order_number} to {to_status.value}")
    return OrderResponse.from_record(order)


@router.post("/orders/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: str,
    refund_request: RefundRequest,
    admin: CurrentUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """Full refund unless `amount` is given."""
    order = await services.checkout.refund_order(order_id, refund_request.amount)
    logger.info(f"Admin {admin.id} refunded order {order.order_number} ({refund_request.amount or 'full'})")
    return OrderResponse.from_record(order)


@router.post("/orders/{order_id}/confirm-payment", response_model=OrderResponse)
async def confirm_offline_payment(
    order_id: str,
    admin: CurrentUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    order = await services.checkout.confirm_offline_payment(order_id)
    logger.info(f"Admin {admin.id} confirmed offline payment for order {order.order_number}")
    return OrderResponse.from_record(order)


@router.post("/inventory/{product_id}/adjust", response_model=StockResponse)
async def adjust_stock(
    product_id: int,
    adjustment: StockAdjustmentRequest,
    admin: CurrentUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    stock = await services.ledger.get_stock(product_id)
    if stock is None:
        raise HTTPException(status_code=404, detail="Product not found")
    if stock.available_quantity + adjustment.delta < 0:
        raise HTTPException(
            status_code=400,
            detail=f"Only {stock.available_quantity} units available to remove",
        )

    await services.ledger.adjust(product_id, adjustment.delta, f"{adjustment.reason} (by {admin.id})")
    return await _stock_response(services, product_id)


@router.get("/inventory/low-stock", response_model=LowStockResponse)
async def get_low_stock_report(
    limit: int = Query(50, ge=1, le=200),
    admin: CurrentUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """Products at or below their low-stock threshold, lowest available first."""
    products = await services.ledger.low_stock(limit)
    return LowStockResponse(
        items=[
            LowStockItem(
                product_id=p.product_id,
                name=p.name,
                sku=p.sku,
                available_quantity=p.available_quantity,
                reserved_quantity=p.reserved_quantity,
                low_stock_threshold=p.low_stock_threshold,
            )
            for p in products
        ]
    )


@router.get("/inventory/{product_id}", response_model=StockResponse)
async def get_stock(
    product_id: int,
    admin: CurrentUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return await _stock_response(services, product_id)


async def _stock_response(services: Services, product_id: int) -> StockResponse:
    stock = await services.ledger.get_stock(product_id)
    if stock is None:
        raise HTTPException(status_code=404, detail="Product not found")

    log = await services.ledger.get_log(product_id)
    return StockResponse(
        product_id=stock.product_id,
        name=stock.name,
        available_quantity=stock.available_quantity,
        reserved_quantity=stock.reserved_quantity,
        low_stock_threshold=stock.low_stock_threshold,
        log=[
            InventoryLogResponse(
                delta=entry.delta,
                kind=entry.kind.value,
                reason=entry.reason,
                previous_quantity=entry.previous_quantity,
                new_quantity=entry.new_quantity,
                order_id=entry.order_id,
                created_at=entry.created_at,
            )
            for entry in log
        ],
    )
