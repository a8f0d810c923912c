"""
Plain records passed across the repository boundary.

Core services never see ORM instances; each repository implementation maps
its storage rows to these.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from storefront.models import (
    InventoryLogKind,
    OrderStatus,
    PaymentStatus,
    PaymentRecordStatus,
    ReservationState,
)

DEFAULT_LOW_STOCK_THRESHOLD = 5


@dataclass
class StockRecord:
    product_id: int
    name: str
    price: Decimal
    available_quantity: int
    reserved_quantity: int
    sku: Optional[str] = None
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD

    @property
    def is_low_stock(self) -> bool:
        return self.available_quantity <= self.low_stock_threshold


@dataclass
class QuantityChange:
    """Before/after snapshot returned by a conditional stock update."""
    product_id: int
    previous_available: int
    new_available: int
    previous_reserved: int
    new_reserved: int
    low_stock_threshold: Optional[int] = None

    @property
    def crossed_low_stock(self) -> bool:
        """Available stock fell from above the threshold to at or below it."""
        if self.low_stock_threshold is None:
            return False
        return self.previous_available > self.low_stock_threshold >= self.new_available


@dataclass
class InventoryLogEntry:
    product_id: int
    delta: int
    kind: InventoryLogKind
    reason: Optional[str]
    previous_quantity: int
    new_quantity: int
    order_id: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class ReservationRecord:
    order_id: str
    product_id: int
    quantity: int
    state: ReservationState = ReservationState.ACTIVE
    sweep_attempts: int = 0
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class OrderLine:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class OrderRecord:
    id: str
    order_number: str
    user_id: str
    lines: List[OrderLine]
    total: Decimal
    currency: str
    payment_method: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_reference: Optional[str] = None
    status_message: Optional[str] = None
    shipping_info: Dict[str, Any] = field(default_factory=dict)
    billing_info: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


@dataclass
class PaymentRecord:
    provider: str
    order_id: str
    reference: str
    amount: Decimal
    status: PaymentRecordStatus = PaymentRecordStatus.PENDING
    provider_reference: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    refunded_amount: Decimal = Decimal("0")
    verification_response: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None
