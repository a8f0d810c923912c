"""
Order models

Two independent state axes:
- status:          PENDING -> PROCESSING -> READY_FOR_SHIPPING -> SHIPPED -> DELIVERED,
                   CANCELLED / FAILED from any non-terminal status
- payment_status:  PENDING -> SUCCESSFUL | FAILED, SUCCESSFUL -> REFUNDED

The transition tables below are the only definition of what is legal; the
order state machine service enforces them.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, Numeric, Index, CheckConstraint
from sqlalchemy.orm import relationship

from storefront.core.database import Base


class OrderStatus(str, PyEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY_FOR_SHIPPING = "READY_FOR_SHIPPING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# =============================================================================
# VALID STATE TRANSITIONS
# =============================================================================

VALID_STATUS_TRANSITIONS = {
    OrderStatus.PENDING: [
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    ],
    OrderStatus.PROCESSING: [
        OrderStatus.READY_FOR_SHIPPING,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    ],
    OrderStatus.READY_FOR_SHIPPING: [
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    ],
    OrderStatus.SHIPPED: [
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    ],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.FAILED: [],
}

VALID_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: [
        PaymentStatus.SUCCESSFUL,
        PaymentStatus.FAILED,
    ],
    PaymentStatus.SUCCESSFUL: [
        PaymentStatus.REFUNDED,
    ],
    PaymentStatus.FAILED: [],
    PaymentStatus.REFUNDED: [],
}

# Forward fulfilment steps (admin driven)
FULFILMENT_STEPS = {
    OrderStatus.PROCESSING: OrderStatus.READY_FOR_SHIPPING,
    OrderStatus.READY_FOR_SHIPPING: OrderStatus.SHIPPED,
    OrderStatus.SHIPPED: OrderStatus.DELIVERED,
}


def can_transition_status(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_STATUS_TRANSITIONS.get(current, [])


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in VALID_PAYMENT_TRANSITIONS.get(current, [])


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(32), unique=True, index=True, nullable=False)
    user_id = Column(String(64), nullable=False, index=True)

    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_status = Column(String(32), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    status_message = Column(String(255), nullable=True)

    # Computed server-side from catalog prices; immutable once set
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    payment_method = Column(String(32), nullable=False)
    payment_reference = Column(String(64), nullable=True, unique=True)

    shipping_info = Column(JSON)
    billing_info = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    paid_at = Column(DateTime(timezone=True))

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        Index("ix_orders_status_payment", "status", "payment_status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)

    # Snapshot of product at time of order
    product_name = Column(String(500), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
