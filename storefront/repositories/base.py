"""
Repository interfaces

One repository per entity, exposing only the operations the settlement core
needs. Every mutating stock/order operation is a single conditional update:
implementations must apply the check and the write atomically (one SQL
statement, or one step under the store lock) and report a miss by returning
None/False rather than raising.

A Store hands out UnitOfWork objects; everything done through one unit of work
commits or rolls back together.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Collection, Dict, List, Optional

from storefront.models import (
    ACTIVE_PAYMENT_STATUSES,
    OrderStatus,
    PaymentStatus,
    PaymentRecordStatus,
    ReservationState,
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


class StockRepository(ABC):

    @abstractmethod
    async def get(self, product_id: int) -> Optional[StockRecord]:
        pass

    @abstractmethod
    async def add(self, record: StockRecord) -> StockRecord:
        pass

    @abstractmethod
    async def try_reserve(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        """available -= q, reserved += q, only if available >= q."""
        pass

    @abstractmethod
    async def try_commit(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        """reserved -= q, only if reserved >= q."""
        pass

    @abstractmethod
    async def try_release(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        """reserved -= q, available += q, only if reserved >= q."""
        pass

    @abstractmethod
    async def try_adjust(self, product_id: int, delta: int) -> Optional[QuantityChange]:
        """available += delta, only if the result stays >= 0."""
        pass

    @abstractmethod
    async def append_log(self, entry: InventoryLogEntry) -> None:
        pass

    @abstractmethod
    async def list_log(self, product_id: int, limit: int = 100) -> List[InventoryLogEntry]:
        """Newest first."""
        pass

    @abstractmethod
    async def list_low_stock(self, limit: int = 50) -> List[StockRecord]:
        """Products whose available quantity is at or below their threshold, lowest first."""
        pass


class ReservationRepository(ABC):

    @abstractmethod
    async def add(self, reservation: ReservationRecord) -> ReservationRecord:
        pass

    @abstractmethod
    async def list_for_order(
        self,
        order_id: str,
        state: Optional[ReservationState] = None,
    ) -> List[ReservationRecord]:
        pass

    @abstractmethod
    async def resolve(self, reservation_id: int, state: ReservationState, resolved_at: datetime) -> bool:
        """ACTIVE -> state. False if the reservation was no longer ACTIVE."""
        pass

    @abstractmethod
    async def list_stale(self, created_before: datetime, limit: int) -> List[ReservationRecord]:
        """ACTIVE reservations created before the cutoff, oldest first."""
        pass

    @abstractmethod
    async def increment_sweep_attempts(self, reservation_id: int) -> int:
        pass

    @abstractmethod
    async def stats(self, created_before: datetime) -> Dict[str, int]:
        pass


class OrderRepository(ABC):

    @abstractmethod
    async def add(self, order: OrderRecord) -> OrderRecord:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        order_id: str,
        expected_statuses: Collection[OrderStatus],
        expected_payment_statuses: Collection[PaymentStatus],
        **changes,
    ) -> Optional[OrderRecord]:
        """
        Apply `changes` only if the order is currently in one of the expected
        status/payment_status combinations. Returns the updated order, or None
        when the guard did not match (nothing is written).
        """
        pass

    @abstractmethod
    async def set_payment_reference(self, order_id: str, reference: str) -> None:
        pass


class PaymentRepository(ABC):

    @abstractmethod
    async def add(self, payment: PaymentRecord) -> PaymentRecord:
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[PaymentRecord]:
        """Match our reference or the provider's reference."""
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[PaymentRecord]:
        """Newest first."""
        pass

    @abstractmethod
    async def update(
        self,
        payment_id: int,
        expected_statuses: Optional[Collection[PaymentRecordStatus]] = None,
        **changes,
    ) -> Optional[PaymentRecord]:
        pass

    async def get_active_for_order(self, order_id: str) -> Optional[PaymentRecord]:
        for payment in await self.list_for_order(order_id):
            if payment.status in ACTIVE_PAYMENT_STATUSES:
                return payment
        return None

    async def get_settled_for_order(self, order_id: str) -> Optional[PaymentRecord]:
        for payment in await self.list_for_order(order_id):
            if payment.status == PaymentRecordStatus.SUCCESSFUL:
                return payment
        return None

    @abstractmethod
    async def add_refunded_amount(self, payment_id: int, amount: Decimal) -> Optional[PaymentRecord]:
        """refunded_amount += amount."""
        pass


Callback = Callable[[], Awaitable[Any]]


class UnitOfWork(ABC):
    stock: StockRepository
    reservations: ReservationRepository
    orders: OrderRepository
    payments: PaymentRepository

    def __init__(self):
        self._after_commit: List[Callback] = []
        self._after_exit: List[Callback] = []

    def after_commit(self, callback: Callback) -> None:
        """Run `callback` once this unit of work has committed. Dropped on rollback."""
        self._after_commit.append(callback)

    def after_exit(self, callback: Callback) -> None:
        """Run `callback` once this unit of work has committed or rolled back."""
        self._after_exit.append(callback)

    async def run_callbacks(self, committed: bool) -> None:
        callbacks = (self._after_commit if committed else []) + self._after_exit
        self._after_commit, self._after_exit = [], []
        for callback in callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Unit of work callback failed: {e}", exc_info=True)


class Store(ABC):

    @abstractmethod
    def _begin(self) -> AsyncContextManager[UnitOfWork]:
        """Open the underlying transaction: commit on clean exit, roll back on exception."""
        pass

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        """
        Open a unit of work. Commits on clean exit, rolls back on exception.

        Callbacks registered on the unit of work run after the store lock or
        database transaction has been let go.
        """
        tx = None
        try:
            async with self._begin() as tx:
                yield tx
        except Exception:
            if tx is not None:
                await tx.run_callbacks(committed=False)
            raise
        await tx.run_callbacks(committed=True)

    @asynccontextmanager
    async def join(self, uow: Optional[UnitOfWork] = None) -> AsyncIterator[UnitOfWork]:
        """Reuse the caller's unit of work, or open a new one."""
        if uow is not None:
            yield uow
            return
        async with self.transaction() as tx:
            yield tx

    async def close(self) -> None:
        pass
