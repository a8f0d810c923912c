"""
Checkout and order schemas

Pydantic models for the storefront API. Cart quantities are validated by the
checkout service, which answers with an `invalid_cart` error.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ==================== Checkout ====================


class CheckoutItem(BaseModel):
    product_id: int
    quantity: int


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem]
    shipping: Dict[str, Any] = Field(default_factory=dict)
    billing: Dict[str, Any] = Field(default_factory=dict)
    payment_method: str = "card"

    @field_validator("payment_method")
    @classmethod
    def normalize_payment_method(cls, v):
        return v.strip().lower()


class CheckoutResponse(BaseModel):
    order_id: str
    order_number: str
    total: Decimal
    currency: str
    reference: Optional[str] = None
    payment_url: Optional[str] = None


class SettlementResponse(BaseModel):
    status: str
    reference: Optional[str] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str


# ==================== Orders ====================


class OrderLineResponse(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal


class OrderResponse(BaseModel):
    id: str
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    total: Decimal
    currency: str
    payment_reference: Optional[str] = None
    status_message: Optional[str] = None
    items: List[OrderLineResponse]
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, order) -> "OrderResponse":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            payment_status=order.payment_status.value,
            payment_method=order.payment_method,
            total=order.total,
            currency=order.currency,
            payment_reference=order.payment_reference,
            status_message=order.status_message,
            items=[
                OrderLineResponse(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for line in order.lines
            ],
            created_at=order.created_at,
            paid_at=order.paid_at,
        )


class CancelOrderRequest(BaseModel):
    reason: str = Field("Cancelled by customer", min_length=1, max_length=500)


# ==================== Admin ====================


class AdvanceOrderRequest(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v):
        return v.strip().upper()


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)


class StockAdjustmentRequest(BaseModel):
    delta: int
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v):
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v


class InventoryLogResponse(BaseModel):
    delta: int
    kind: str
    reason: Optional[str] = None
    previous_quantity: int
    new_quantity: int
    order_id: Optional[str] = None
    created_at: Optional[datetime] = None


class StockResponse(BaseModel):
    product_id: int
    name: str
    available_quantity: int
    reserved_quantity: int
    low_stock_threshold: int
    log: List[InventoryLogResponse] = Field(default_factory=list)


class LowStockItem(BaseModel):
    product_id: int
    name: str
    sku: Optional[str] = None
    available_quantity: int
    reserved_quantity: int
    low_stock_threshold: int


class LowStockResponse(BaseModel):
    items: List[LowStockItem]
