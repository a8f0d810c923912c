"""
Inventory log model for stock audit

Append-only: rows are inserted by the inventory ledger on every mutation and
are never updated or deleted. Used for audit and reconciliation, never for
control flow.
"""
from enum import Enum as PyEnum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from storefront.core.database import Base


class InventoryLogKind(str, PyEnum):
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    COMMIT = "COMMIT"
    ADJUST = "ADJUST"


class InventoryLog(Base):
    """Audit trail for stock changes"""
    __tablename__ = "inventory_logs"

    id = Column(Integer, primary_key=True, index=True)

    product_id = Column(
        Integer,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    kind = Column(String(16), nullable=False, index=True)
    delta = Column(Integer, nullable=False)  # signed change to the quantity being tracked
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)

    order_id = Column(String(36), nullable=True, index=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True
    )

    product = relationship("Product", back_populates="inventory_logs")

    __table_args__ = (
        CheckConstraint(
            "kind IN ('RESERVE', 'RELEASE', 'COMMIT', 'ADJUST')",
            name="chk_inventory_log_kind"
        ),
        Index("ix_inventory_logs_product_created", product_id, created_at.desc()),
    )

    def __repr__(self):
        return f"<InventoryLog {self.id}: {self.kind} {self.delta:+d} on product {self.product_id}>"
