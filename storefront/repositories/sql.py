"""
PostgreSQL store

Each guarded mutation is one UPDATE ... WHERE <guard> RETURNING statement, so
the check and the write cannot be split by a concurrent request. No
SELECT-then-UPDATE anywhere on the money or stock paths.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import AsyncIterator, Collection, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.database import AsyncSessionLocal
from storefront.models import (
    InventoryLog,
    InventoryLogKind,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentRecordStatus,
    PaymentStatus,
    Product,
    ReservationState,
    StockReservation,
)
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

logger = logging.getLogger(__name__)


def _plain(value):
    return value.value if isinstance(value, Enum) else value


def _values(changes: Dict) -> Dict:
    return {name: _plain(value) for name, value in changes.items()}


def _order_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        lines=[
            OrderLine(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price),
            )
            for item in order.items
        ],
        total=Decimal(order.total),
        currency=order.currency,
        payment_method=order.payment_method,
        status=OrderStatus(order.status),
        payment_status=PaymentStatus(order.payment_status),
        payment_reference=order.payment_reference,
        status_message=order.status_message,
        shipping_info=order.shipping_info or {},
        billing_info=order.billing_info or {},
        created_at=order.created_at,
        updated_at=order.updated_at,
        paid_at=order.paid_at,
    )


def _payment_record(payment: Payment) -> PaymentRecord:
    return PaymentRecord(
        id=payment.id,
        provider=payment.provider,
        order_id=payment.order_id,
        reference=payment.reference,
        amount=Decimal(payment.amount),
        status=PaymentRecordStatus(payment.status),
        provider_reference=payment.provider_reference,
        provider_transaction_id=payment.provider_transaction_id,
        refunded_amount=Decimal(payment.refunded_amount or 0),
        verification_response=payment.verification_response,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


def _reservation_record(row: StockReservation) -> ReservationRecord:
    return ReservationRecord(
        id=row.id,
        order_id=row.order_id,
        product_id=row.product_id,
        quantity=row.quantity,
        state=ReservationState(row.state),
        sweep_attempts=row.sweep_attempts,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


class SqlStockRepository(StockRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, product_id: int) -> Optional[StockRecord]:
        product = await self.session.get(Product, product_id, populate_existing=True)
        if product is None:
            return None
        return StockRecord(
            product_id=product.id,
            name=product.name,
            price=Decimal(product.price),
            available_quantity=product.available_quantity,
            reserved_quantity=product.reserved_quantity,
            sku=product.sku,
            low_stock_threshold=product.low_stock_threshold,
        )

    async def add(self, record: StockRecord) -> StockRecord:
        self.session.add(Product(
            id=record.product_id,
            sku=record.sku,
            name=record.name,
            price=record.price,
            available_quantity=record.available_quantity,
            reserved_quantity=record.reserved_quantity,
            low_stock_threshold=record.low_stock_threshold,
        ))
        await self.session.flush()
        return record

    async def _conditional(
        self,
        product_id: int,
        guard,
        available_delta: int,
        reserved_delta: int,
    ) -> Optional[QuantityChange]:
        stmt = (
            update(Product)
            .where(Product.id == product_id, guard)
            .values(
                available_quantity=Product.available_quantity + available_delta,
                reserved_quantity=Product.reserved_quantity + reserved_delta,
            )
            .returning(Product.available_quantity, Product.reserved_quantity, Product.low_stock_threshold)
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return None
        new_available, new_reserved, threshold = row
        return QuantityChange(
            product_id=product_id,
            previous_available=new_available - available_delta,
            new_available=new_available,
            previous_reserved=new_reserved - reserved_delta,
            new_reserved=new_reserved,
            low_stock_threshold=threshold,
        )

    async def try_reserve(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        return await self._conditional(
            product_id, Product.available_quantity >= quantity, -quantity, quantity
        )

    async def try_commit(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        return await self._conditional(
            product_id, Product.reserved_quantity >= quantity, 0, -quantity
        )

    async def try_release(self, product_id: int, quantity: int) -> Optional[QuantityChange]:
        return await self._conditional(
            product_id, Product.reserved_quantity >= quantity, quantity, -quantity
        )

    async def try_adjust(self, product_id: int, delta: int) -> Optional[QuantityChange]:
        return await self._conditional(
            product_id, Product.available_quantity + delta >= 0, delta, 0
        )

    async def append_log(self, entry: InventoryLogEntry) -> None:
        self.session.add(InventoryLog(
            product_id=entry.product_id,
            kind=_plain(entry.kind),
            delta=entry.delta,
            previous_quantity=entry.previous_quantity,
            new_quantity=entry.new_quantity,
            reason=entry.reason,
            order_id=entry.order_id,
        ))
        await self.session.flush()

    async def list_log(self, product_id: int, limit: int = 100) -> List[InventoryLogEntry]:
        result = await self.session.execute(
            select(InventoryLog)
            .where(InventoryLog.product_id == product_id)
            .order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc())
            .limit(limit)
        )
        return [
            InventoryLogEntry(
                id=row.id,
                product_id=row.product_id,
                delta=row.delta,
                kind=InventoryLogKind(row.kind),
                reason=row.reason,
                previous_quantity=row.previous_quantity,
                new_quantity=row.new_quantity,
                order_id=row.order_id,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]

    async def list_low_stock(self, limit: int = 50) -> List[StockRecord]:
        result = await self.session.execute(
            select(Product)
            .where(Product.available_quantity <= Product.low_stock_threshold)
            .order_by(Product.available_quantity.asc(), Product.id.asc())
            .limit(limit)
        )
        return [
            StockRecord(
                product_id=product.id,
                name=product.name,
                price=Decimal(product.price),
                available_quantity=product.available_quantity,
                reserved_quantity=product.reserved_quantity,
                sku=product.sku,
                low_stock_threshold=product.low_stock_threshold,
            )
            for product in result.scalars().all()
        ]


class SqlReservationRepository(ReservationRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, reservation: ReservationRecord) -> ReservationRecord:
        row = StockReservation(
            order_id=reservation.order_id,
            product_id=reservation.product_id,
            quantity=reservation.quantity,
            state=_plain(reservation.state),
            sweep_attempts=reservation.sweep_attempts,
        )
        if reservation.created_at is not None:
            row.created_at = reservation.created_at
        self.session.add(row)
        await self.session.flush()
        return _reservation_record(row)

    async def list_for_order(
        self,
        order_id: str,
        state: Optional[ReservationState] = None,
    ) -> List[ReservationRecord]:
        query = select(StockReservation).where(StockReservation.order_id == order_id)
        if state is not None:
            query = query.where(StockReservation.state == state.value)
        result = await self.session.execute(query.order_by(StockReservation.id))
        return [_reservation_record(row) for row in result.scalars().all()]

    async def resolve(self, reservation_id: int, state: ReservationState, resolved_at: datetime) -> bool:
        result = await self.session.execute(
            update(StockReservation)
            .where(
                StockReservation.id == reservation_id,
                StockReservation.state == ReservationState.ACTIVE.value,
            )
            .values(state=state.value, resolved_at=resolved_at)
            .returning(StockReservation.id)
            .execution_options(synchronize_session=False)
        )
        return result.first() is not None

    async def list_stale(self, created_before: datetime, limit: int) -> List[ReservationRecord]:
        result = await self.session.execute(
            select(StockReservation)
            .where(
                StockReservation.state == ReservationState.ACTIVE.value,
                StockReservation.created_at < created_before,
            )
            .order_by(StockReservation.created_at)
            .limit(limit)
        )
        return [_reservation_record(row) for row in result.scalars().all()]

    async def increment_sweep_attempts(self, reservation_id: int) -> int:
        result = await self.session.execute(
            update(StockReservation)
            .where(StockReservation.id == reservation_id)
            .values(sweep_attempts=StockReservation.sweep_attempts + 1)
            .returning(StockReservation.sweep_attempts)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one()

    async def stats(self, created_before: datetime) -> Dict[str, int]:
        active = StockReservation.state == ReservationState.ACTIVE.value
        total = await self.session.scalar(select(func.count(StockReservation.id)))
        active_count = await self.session.scalar(
            select(func.count(StockReservation.id)).where(active)
        )
        expired_count = await self.session.scalar(
            select(func.count(StockReservation.id)).where(
                active, StockReservation.created_at < created_before
            )
        )
        return {
            "total_reservations": total or 0,
            "active_reservations": active_count or 0,
            "expired_reservations": expired_count or 0,
        }


class SqlOrderRepository(OrderRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, order: OrderRecord) -> OrderRecord:
        row = Order(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status.value,
            payment_status=order.payment_status.value,
            status_message=order.status_message,
            total=order.total,
            currency=order.currency,
            payment_method=order.payment_method,
            payment_reference=order.payment_reference,
            shipping_info=order.shipping_info,
            billing_info=order.billing_info,
        )
        row.items = [
            OrderItem(
                product_id=line.product_id,
                product_name=line.product_name,
                unit_price=line.unit_price,
                quantity=line.quantity,
            )
            for line in order.lines
        ]
        self.session.add(row)
        await self.session.flush()
        return _order_record(await self._load(order.id))

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        order = await self._load(order_id)
        return _order_record(order) if order else None

    async def compare_and_set(
        self,
        order_id: str,
        expected_statuses: Collection[OrderStatus],
        expected_payment_statuses: Collection[PaymentStatus],
        **changes,
    ) -> Optional[OrderRecord]:
        result = await self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_([s.value for s in expected_statuses]),
                Order.payment_status.in_([s.value for s in expected_payment_statuses]),
            )
            .values(**_values(changes))
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )
        if result.first() is None:
            return None
        return _order_record(await self._load(order_id))

    async def set_payment_reference(self, order_id: str, reference: str) -> None:
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_reference=reference)
            .execution_options(synchronize_session=False)
        )


class SqlPaymentRepository(PaymentRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, payment_id: int) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, payment: PaymentRecord) -> PaymentRecord:
        row = Payment(
            provider=payment.provider,
            order_id=payment.order_id,
            reference=payment.reference,
            amount=payment.amount,
            refunded_amount=payment.refunded_amount,
            status=payment.status.value,
            provider_reference=payment.provider_reference,
            provider_transaction_id=payment.provider_transaction_id,
            verification_response=payment.verification_response,
        )
        self.session.add(row)
        await self.session.flush()
        return _payment_record(row)

    async def get_by_reference(self, reference: str) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            select(Payment)
            .where((Payment.reference == reference) | (Payment.provider_reference == reference))
            .order_by(Payment.id.desc())
            .limit(1)
        )
        payment = result.scalar_one_or_none()
        return _payment_record(payment) if payment else None

    async def list_for_order(self, order_id: str) -> List[PaymentRecord]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.id.desc())
        )
        return [_payment_record(p) for p in result.scalars().all()]

    async def update(
        self,
        payment_id: int,
        expected_statuses: Optional[Collection[PaymentRecordStatus]] = None,
        **changes,
    ) -> Optional[PaymentRecord]:
        stmt = update(Payment).where(Payment.id == payment_id)
        if expected_statuses is not None:
            stmt = stmt.where(Payment.status.in_([s.value for s in expected_statuses]))
        result = await self.session.execute(
            stmt.values(**_values(changes))
            .returning(Payment.id)
            .execution_options(synchronize_session=False)
        )
        if result.first() is None:
            return None
        return _payment_record(await self._load(payment_id))

    async def add_refunded_amount(self, payment_id: int, amount: Decimal) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(refunded_amount=Payment.refunded_amount + amount)
            .returning(Payment.id)
            .execution_options(synchronize_session=False)
        )
        if result.first() is None:
            return None
        return _payment_record(await self._load(payment_id))


class SqlUnitOfWork(UnitOfWork):

    def __init__(self, session: AsyncSession):
        super().__init__()
        self.session = session
        self.stock = SqlStockRepository(session)
        self.reservations = SqlReservationRepository(session)
        self.orders = SqlOrderRepository(session)
        self.payments = SqlPaymentRepository(session)


class SqlStore(Store):

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[UnitOfWork]:
        async with self._session_factory() as session:
            async with session.begin():
                yield SqlUnitOfWork(session)

    async def close(self) -> None:
        bind = self._session_factory.kw.get("bind")
        if bind is not None:
            await bind.dispose()
