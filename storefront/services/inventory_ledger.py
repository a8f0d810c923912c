"""
Inventory Ledger

Authoritative stock per product. Every mutation is a conditional update on
the product row followed by an append-only log entry, inside one unit of work.

    reserve:  available -= q, reserved += q   (available >= q)
    commit:   reserved -= q                   (reserved >= q)
    release:  reserved -= q, available += q   (reserved >= q)
    adjust:   available += delta              (result >= 0)

A reservation row per cart line records who holds stock and since when;
commit_order / release_order move each row ACTIVE -> COMMITTED | RELEASED
with a conditional update so a hold is resolved at most once.

Every method takes an optional `uow` so callers can fold ledger work into
their own unit of work (the order state machine does this).

Alerts are sent once the unit of work has ended: invariant violations
after the rollback, low-stock crossings after the commit.
"""
import functools
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from storefront.core.exceptions import InsufficientStock, InvariantViolation, ProductNotFound
from storefront.models import InventoryLogKind, ReservationState
from storefront.repositories import (
    InventoryLogEntry,
    QuantityChange,
    ReservationRecord,
    StockRecord,
    Store,
    UnitOfWork,
)
from storefront.services.alerting import alert_invariant_violation, alert_low_stock

logger = logging.getLogger(__name__)


class InventoryLedger:

    def __init__(self, store: Store):
        self.store = store

    # ----- Reservation -----

    async def reserve(
        self,
        product_id: int,
        quantity: int,
        order_id: str,
        uow: Optional[UnitOfWork] = None,
    ) -> ReservationRecord:
        """
        Hold `quantity` units of a product for an order.

        Raises:
            InsufficientStock: fewer than `quantity` units available. Nothing is written.
            ProductNotFound: unknown product.
        """
        if quantity <= 0:
            raise ValueError(f"Reservation quantity must be positive, got {quantity}")

        async with self.store.join(uow) as tx:
            change = await tx.stock.try_reserve(product_id, quantity)
            if change is None:
                stock = await tx.stock.get(product_id)
                if stock is None:
                    raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})
                raise InsufficientStock(
                    f"Insufficient stock for product {product_id}",
                    product_id=product_id,
                    requested_qty=quantity,
                    available_qty=stock.available_quantity,
                )

            await self._log(tx, change, InventoryLogKind.RESERVE, -quantity, "checkout reservation", order_id)
            reservation = await tx.reservations.add(
                ReservationRecord(order_id=order_id, product_id=product_id, quantity=quantity)
            )

        logger.debug(f"Reserved {quantity} x product {product_id} for order {order_id}")
        return reservation

    async def reserve_all(
        self,
        items: Iterable[Tuple[int, int]],
        order_id: str,
        uow: Optional[UnitOfWork] = None,
    ) -> List[ReservationRecord]:
        """
        Reserve a whole cart or nothing.

        Lines are taken in ascending product id order. The first line that
        cannot be reserved aborts the unit of work, undoing the lines already
        reserved, and its InsufficientStock propagates.
        """
        quantities: Dict[int, int] = {}
        for product_id, quantity in items:
            quantities[product_id] = quantities.get(product_id, 0) + quantity

        async with self.store.join(uow) as tx:
            reservations = []
            for product_id in sorted(quantities):
                reservations.append(await self.reserve(product_id, quantities[product_id], order_id, uow=tx))
        return reservations

    # ----- Resolution -----

    async def commit(
        self,
        product_id: int,
        quantity: int,
        order_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> QuantityChange:
        """Consume reserved units (the sale happened)."""
        async with self.store.join(uow) as tx:
            change = await tx.stock.try_commit(product_id, quantity)
            if change is None:
                await self._violation(tx, product_id, "commit", quantity, order_id)
            await self._log(tx, change, InventoryLogKind.COMMIT, -quantity, "payment confirmed", order_id)
        return change

    async def release(
        self,
        product_id: int,
        quantity: int,
        order_id: Optional[str] = None,
        reason: str = "reservation released",
        uow: Optional[UnitOfWork] = None,
    ) -> QuantityChange:
        """Return reserved units to available."""
        async with self.store.join(uow) as tx:
            change = await tx.stock.try_release(product_id, quantity)
            if change is None:
                await self._violation(tx, product_id, "release", quantity, order_id)
            await self._log(tx, change, InventoryLogKind.RELEASE, quantity, reason, order_id)
        return change

    async def commit_order(self, order_id: str, uow: Optional[UnitOfWork] = None) -> List[ReservationRecord]:
        """Commit every ACTIVE reservation of an order. Returns the ones this call resolved."""
        return await self._resolve_order(order_id, ReservationState.COMMITTED, None, uow)

    async def release_order(
        self,
        order_id: str,
        reason: str = "reservation released",
        uow: Optional[UnitOfWork] = None,
    ) -> List[ReservationRecord]:
        """Release every ACTIVE reservation of an order. Returns the ones this call resolved."""
        return await self._resolve_order(order_id, ReservationState.RELEASED, reason, uow)

    async def resolve_reservation(
        self,
        reservation: ReservationRecord,
        state: ReservationState,
        reason: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> bool:
        """
        Move one reservation ACTIVE -> state and apply its stock effect.

        False if it was already resolved by someone else (no stock change).
        """
        async with self.store.join(uow) as tx:
            resolved = await tx.reservations.resolve(reservation.id, state, datetime.now(timezone.utc))
            if not resolved:
                return False
            if state == ReservationState.COMMITTED:
                await self.commit(reservation.product_id, reservation.quantity, reservation.order_id, uow=tx)
            else:
                await self.release(
                    reservation.product_id,
                    reservation.quantity,
                    reservation.order_id,
                    reason or "reservation released",
                    uow=tx,
                )
        return True

    async def _resolve_order(
        self,
        order_id: str,
        state: ReservationState,
        reason: Optional[str],
        uow: Optional[UnitOfWork],
    ) -> List[ReservationRecord]:
        resolved = []
        async with self.store.join(uow) as tx:
            for reservation in await tx.reservations.list_for_order(order_id, ReservationState.ACTIVE):
                if await self.resolve_reservation(reservation, state, reason, uow=tx):
                    resolved.append(reservation)
        if resolved:
            logger.info(f"{state.value.title()} {len(resolved)} reservation(s) for order {order_id}")
        return resolved

    # ----- Administrative -----

    async def adjust(
        self,
        product_id: int,
        delta: int,
        reason: str,
        order_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> QuantityChange:
        """
        Administrative correction to available stock.

        Raises:
            InvariantViolation: the adjustment would take available below zero.
            ProductNotFound: unknown product.
        """
        async with self.store.join(uow) as tx:
            change = await tx.stock.try_adjust(product_id, delta)
            if change is None:
                if await tx.stock.get(product_id) is None:
                    raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})
                await self._violation(tx, product_id, "adjust", delta, order_id)
            await self._log(tx, change, InventoryLogKind.ADJUST, delta, reason, order_id)

        logger.info(
            f"Stock adjusted for product {product_id}: {change.previous_available} -> "
            f"{change.new_available} ({reason})"
        )
        return change

    async def restock(self, order_id: str, reason: str, uow: Optional[UnitOfWork] = None) -> int:
        """Return committed units of an order to available stock. Returns units restocked."""
        units = 0
        async with self.store.join(uow) as tx:
            for reservation in await tx.reservations.list_for_order(order_id, ReservationState.COMMITTED):
                await self.adjust(reservation.product_id, reservation.quantity, reason, order_id, uow=tx)
                units += reservation.quantity
        return units

    async def get_stock(self, product_id: int) -> Optional[StockRecord]:
        async with self.store.transaction() as tx:
            return await tx.stock.get(product_id)

    async def get_log(self, product_id: int, limit: int = 100) -> List[InventoryLogEntry]:
        async with self.store.transaction() as tx:
            return await tx.stock.list_log(product_id, limit)

    async def low_stock(self, limit: int = 50) -> List[StockRecord]:
        """Products at or below their low-stock threshold, lowest available first."""
        async with self.store.transaction() as tx:
            return await tx.stock.list_low_stock(limit)

    # ----- Helpers -----

    async def _log(
        self,
        tx: UnitOfWork,
        change: QuantityChange,
        kind: InventoryLogKind,
        delta: int,
        reason: Optional[str],
        order_id: Optional[str],
    ) -> None:
        await tx.stock.append_log(InventoryLogEntry(
            product_id=change.product_id,
            delta=delta,
            kind=kind,
            reason=reason,
            previous_quantity=change.previous_available,
            new_quantity=change.new_available,
            order_id=order_id,
        ))
        if change.crossed_low_stock:
            logger.warning(
                f"Product {change.product_id} low on stock: {change.new_available} left "
                f"(threshold {change.low_stock_threshold})"
            )
            tx.after_commit(functools.partial(
                alert_low_stock, change.product_id, change.new_available, change.low_stock_threshold
            ))

    async def _violation(
        self,
        tx: UnitOfWork,
        product_id: int,
        operation: str,
        quantity: int,
        order_id: Optional[str],
    ) -> None:
        stock = await tx.stock.get(product_id)
        details = {
            "product_id": product_id,
            "operation": operation,
            "quantity": quantity,
            "order_id": order_id,
            "available_quantity": stock.available_quantity if stock else None,
            "reserved_quantity": stock.reserved_quantity if stock else None,
        }
        logger.error(f"INVARIANT VIOLATION: {operation} of {quantity} on product {product_id} rejected: {details}")
        tx.after_exit(functools.partial(alert_invariant_violation, product_id, operation, details))
        raise InvariantViolation(
            f"Cannot {operation} {quantity} unit(s) of product {product_id}",
            details=details,
        )
