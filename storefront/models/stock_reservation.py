"""
Stock Reservation model

One row per reserved cart line. The authoritative hold lives in
products.reserved_quantity; this row records who holds it and since when so
the sweeper can find stale holds, and so that each hold is resolved
(ACTIVE -> COMMITTED | RELEASED) exactly once.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint, Index

from storefront.core.database import Base


class ReservationState(str, PyEnum):
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class StockReservation(Base):
    __tablename__ = "stock_reservations"

    id = Column(Integer, primary_key=True, index=True)
    # Not a FK: reservations are taken before the order row exists
    order_id = Column(String(36), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    state = Column(String(16), nullable=False, default=ReservationState.ACTIVE.value)
    sweep_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        CheckConstraint(
            "state IN ('ACTIVE', 'COMMITTED', 'RELEASED')",
            name="ck_reservation_state"
        ),
        Index("ix_stock_reservations_state_created", state, created_at),
    )
