"""
Product stock model

available_quantity and reserved_quantity are mutated only through the
inventory ledger. CHECK constraints keep both non-negative even if a caller
bypasses the ledger's conditional updates. Available stock at or below
low_stock_threshold counts as low stock.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Numeric, CheckConstraint
from sqlalchemy.orm import relationship

from storefront.core.database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), unique=True, index=True, nullable=True)
    name = Column(String(500), nullable=False)

    # Numeric(12,2) for monetary values
    price = Column(Numeric(12, 2), nullable=False)

    # Inventory
    available_quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    inventory_logs = relationship("InventoryLog", back_populates="product")

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_products_available_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_products_reserved_non_negative"),
    )

    def __repr__(self):
        return (
            f"<Product {self.id}: available={self.available_quantity} "
            f"reserved={self.reserved_quantity}>"
        )
