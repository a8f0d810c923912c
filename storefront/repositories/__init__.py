from storefront.repositories.base import (
    OrderRepository,
    PaymentRepository,
    ReservationRepository,
    StockRepository,
    Store,
    UnitOfWork,
)
from storefront.repositories.records import (
    InventoryLogEntry,
    OrderLine,
    OrderRecord,
    PaymentRecord,
    QuantityChange,
    ReservationRecord,
    StockRecord,
)
from storefront.repositories.memory import MemoryStore


def build_store(storage_backend: str) -> Store:
    """Store for the configured STORAGE_BACKEND."""
    if storage_backend == "memory":
        return MemoryStore()
    from storefront.repositories.sql import SqlStore
    return SqlStore()
