"""
Catalog lookup used to price carts server-side.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from storefront.repositories import Store


@dataclass
class ProductInfo:
    id: int
    name: str
    price: Decimal
    current_stock: int


class Catalog(Protocol):

    async def get_product(self, product_id: int) -> Optional[ProductInfo]:
        ...


class StoreCatalog:
    """Reads product name, price and available stock from the products table."""

    def __init__(self, store: Store):
        self.store = store

    async def get_product(self, product_id: int) -> Optional[ProductInfo]:
        async with self.store.transaction() as tx:
            stock = await tx.stock.get(product_id)
        if stock is None:
            return None
        return ProductInfo(
            id=stock.product_id,
            name=stock.name,
            price=stock.price,
            current_stock=stock.available_quantity,
        )
