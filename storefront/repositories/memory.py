"""
In-process store

Used for local runs (STORAGE_BACKEND=memory) and tests. Units of work are
serialized by one asyncio.Lock and rolled back from a snapshot taken at
begin, which gives the same all-or-nothing and conditional-update semantics
as the SQL store for a single process. Records are copied on the way in and
out so callers never hold live state.
"""
import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Collection, Dict, List, Optional

from storefront.models import OrderStatus, PaymentStatus, PaymentRecordStatus, ReservationState
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
    OrderRecord,
    PaymentRecord,
    QuantityChange,
    ReservationRecord,
    StockRecord,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _MemoryState:
    products: Dict[int, StockRecord] = field(default_factory=dict)
    logs: List[InventoryLogEntry] = field(default_factory=list)
    reservations: Dict[int, ReservationRecord] = field(default_factory=dict)
    orders: Dict[str, OrderRecord] = field(default_factory=dict)
    payments: Dict[int, PaymentRecord] = field(default_factory=dict)
    next_id: int = 1

    def allocate_id(self) -> int:
        value = self.next_id
        self.next_id += 1
        return value


class MemoryStockRepository(StockRepository):

    def __init__(self, state: _MemoryState):
        self._state = state

    async def get(self, product_id: int) -> Optional[StockRecord]:
        record = self._state.products.get(product_id)
        return copy.deepcopy(record) if record else None

    async def add(self, record: StockRecord) -> StockRecord:
        self._state.products[record.product_id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def _change(self, product_id: int, available_delta: int, reserved_delta: int) -> QuantityChange:
        record = self._state.products[product_id]
        change = QuantityChange(
            product_id=product_id,
            previous_available=record.available_quantity,
            new_available=record.available_quantity + available_delta,
            previous_reserved=record.reserved_quantity,
            new_reserved=record.reserved_quantity + reserved_delta,
            low_stock_threshold=record.low_stock_threshold,
        )
        record.available_quantity = change.new_available
        record.reserved_quantity = change.new_reserved
        return change

    async def try_reserve(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        record = self._state.products.get(product_id)
        if record is None or record.available_quantity < quantity:
            return None
        return self._change(product_id, -quantity, quantity)

    async def try_commit(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        record = self._state.products.get(product_id)
        if record is None or record.reserved_quantity < quantity:
            return None
        return self._change(product_id, 0, -quantity)

    async def try_release(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        record = self._state.products.get(product_id)
        if record is None or record.reserved_quantity < quantity:
            return None
        return self._change(product_id, quantity, -quantity)

    async def try_adjust(self, product_id: int, delta: int) -> Optional[QuantityChange]:
        record = self._state.products.get(product_id)
        if record is None or record.available_quantity + delta < 0:
            return None
        return self._change(product_id, delta, 0)

    async def append_log(self, entry: InventoryLogEntry) -> None:
        stored = replace(entry, id=self._state.allocate_id(), created_at=entry.created_at or _now())
        self._state.logs.append(stored)

    async def list_log(self, product_id: int, limit: int = 100) -> List[InventoryLogEntry]:
        entries = [copy.deepcopy(e) for e in self._state.logs if e.product_id == product_id]
        entries.reverse()
        return entries[:limit]

    async def list_low_stock(self, limit: int = 50) -> List[StockRecord]:
        low = [copy.deepcopy(r) for r in self._state.products.values() if r.is_low_stock]
        low.sort(key=lambda r: (r.available_quantity, r.product_id))
        return low[:limit]


class MemoryReservationRepository(ReservationRepository):

    def __init__(self, state: _MemoryState):
        self._state = state

    async def add(self, reservation: ReservationRecord) -> ReservationRecord:
        stored = replace(
            reservation,
            id=self._state.allocate_id(),
            created_at=reservation.created_at or _now(),
        )
        self._state.reservations[stored.id] = stored
        return copy.deepcopy(stored)

    async def list_for_order(
        self,
        order_id: str,
        state: Optional[ReservationState] = None,
    ) -> List[ReservationRecord]:
        return [
            copy.deepcopy(r)
            for r in self._state.reservations.values()
            if r.order_id == order_id and (state is None or r.state == state)
        ]

    async def resolve(self, reservation_id: int, state: ReservationState, resolved_at: datetime) -> bool:
        record = self._state.reservations.get(reservation_id)
        if record is None or record.state != ReservationState.ACTIVE:
            return False
        record.state = state
        record.resolved_at = resolved_at
        return True

    async def list_stale(self, created_before: datetime, limit: int) -> List[ReservationRecord]:
        stale = [
            r for r in self._state.reservations.values()
            if r.state == ReservationState.ACTIVE and r.created_at < created_before
        ]
        stale.sort(key=lambda r: r.created_at)
        return [copy.deepcopy(r) for r in stale[:limit]]

    async def increment_sweep_attempts(self, reservation_id: int) -> int:
        record = self._state.reservations[reservation_id]
        record.sweep_attempts += 1
        return record.sweep_attempts

    async def stats(self, created_before: datetime) -> Dict[str, int]:
        active = [r for r in self._state.reservations.values() if r.state == ReservationState.ACTIVE]
        expired = [r for r in active if r.created_at < created_before]
        return {
            "total_reservations": len(self._state.reservations),
            "active_reservations": len(active),
            "expired_reservations": len(expired),
        }


class MemoryOrderRepository(OrderRepository):

    def __init__(self, state: _MemoryState):
        self._state = state

    async def add(self, order: OrderRecord) -> OrderRecord:
        now = _now()
        stored = replace(order, created_at=order.created_at or now, updated_at=now)
        self._state.orders[stored.id] = copy.deepcopy(stored)
        return stored

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        order = self._state.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def compare_and_set(
        self,
        order_id: str,
        expected_statuses: Collection[OrderStatus],
        expected_payment_statuses: Collection[PaymentStatus],
        **changes,
    ) -> Optional[OrderRecord]:
        order = self._state.orders.get(order_id)
        if order is None:
            return None
        if order.status not in expected_statuses or order.payment_status not in expected_payment_statuses:
            return None
        for name, value in changes.items():
            setattr(order, name, value)
        order.updated_at = _now()
        return copy.deepcopy(order)

    async def set_payment_reference(self, order_id: str, reference: str) -> None:
        order = self._state.orders[order_id]
        order.payment_reference = reference
        order.updated_at = _now()


class MemoryPaymentRepository(PaymentRepository):

    def __init__(self, state: _MemoryState):
        self._state = state

    async def add(self, payment: PaymentRecord) -> PaymentRecord:
        now = _now()
        stored = replace(payment, id=self._state.allocate_id(), created_at=now, updated_at=now)
        self._state.payments[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_by_reference(self, reference: str) -> Optional[PaymentRecord]:
        for payment in self._state.payments.values():
            if payment.reference == reference or payment.provider_reference == reference:
                return copy.deepcopy(payment)
        return None

    async def list_for_order(self, order_id: str) -> List[PaymentRecord]:
        payments = [p for p in self._state.payments.values() if p.order_id == order_id]
        payments.sort(key=lambda p: p.id, reverse=True)
        return [copy.deepcopy(p) for p in payments]

    async def update(
        self,
        payment_id: int,
        expected_statuses: Optional[Collection[PaymentRecordStatus]] = None,
        **changes,
    ) -> Optional[PaymentRecord]:
        payment = self._state.payments.get(payment_id)
        if payment is None:
            return None
        if expected_statuses is not None and payment.status not in expected_statuses:
            return None
        for name, value in changes.items():
            setattr(payment, name, value)
        payment.updated_at = _now()
        return copy.deepcopy(payment)

    async def add_refunded_amount(self, payment_id: int, amount: Decimal) -> Optional[PaymentRecord]:
        payment = self._state.payments.get(payment_id)
        if payment is None:
            return None
        payment.refunded_amount = payment.refunded_amount + amount
        payment.updated_at = _now()
        return copy.deepcopy(payment)


class MemoryUnitOfWork(UnitOfWork):

    def __init__(self, state: _MemoryState):
        super().__init__()
        self.stock = MemoryStockRepository(state)
        self.reservations = MemoryReservationRepository(state)
        self.orders = MemoryOrderRepository(state)
        self.payments = MemoryPaymentRepository(state)


class MemoryStore(Store):
    """Single-process store. Not shared across workers."""

    def __init__(self):
        self._state = _MemoryState()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[UnitOfWork]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield MemoryUnitOfWork(self._state)
            except BaseException:
                self._state = snapshot
                raise
