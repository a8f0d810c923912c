"""
Payment record model

One row per payment attempt. `reference` is ours (generated before the
provider is called, so the webhook path can always find the order);
`provider_reference` is filled in once the provider responds.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, Numeric, Index

from storefront.core.database import Base


class PaymentProvider(str, PyEnum):
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"


class PaymentRecordStatus(str, PyEnum):
    PENDING = "PENDING"
    INITIALIZED = "INITIALIZED"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


ACTIVE_PAYMENT_STATUSES = frozenset({
    PaymentRecordStatus.PENDING,
    PaymentRecordStatus.INITIALIZED,
})


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    reference = Column(String(64), nullable=False, unique=True)
    provider_reference = Column(String(128), nullable=True, index=True)
    provider_transaction_id = Column(String(128), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(16), nullable=False, default=PaymentRecordStatus.PENDING.value)

    verification_response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_payments_order_status", "order_id", "status"),
        # At most one live (PENDING/INITIALIZED) attempt per order
        Index(
            "uq_payments_one_active_per_order",
            "order_id",
            unique=True,
            postgresql_where=status.in_(["PENDING", "INITIALIZED"]),
            sqlite_where=status.in_(["PENDING", "INITIALIZED"]),
        ),
    )
