"""
Order State Machine

The single authority for order and payment status changes. Every transition
is one unit of work whose first write is a conditional update on the order
row (status IN (...) AND payment_status IN (...)). When the guard misses,
nothing is written and IllegalTransition is raised, which is what makes
concurrent settlement of the same order exactly-once.

Inventory side effects (commit, release, restock) and the payment record
update run in the same unit of work as the order transition. Notifications go
out after the unit of work commits.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Collection, Dict, List, Optional

from storefront.core.exceptions import IllegalTransition, OrderNotFound, PaymentVerificationFailed
from storefront.models import (
    ACTIVE_PAYMENT_STATUSES,
    FULFILMENT_STEPS,
    OrderStatus,
    PaymentRecordStatus,
    PaymentStatus,
    can_transition_payment,
    can_transition_status,
)
from storefront.repositories import OrderRecord, Store, UnitOfWork
from storefront.services.inventory_ledger import InventoryLedger
from storefront.services.notifications import Notifier

logger = logging.getLogger(__name__)

ALL_STATUSES = list(OrderStatus)

# Cancellable after payment; SHIPPED goods have left the warehouse
CANCELLABLE_AFTER_PAYMENT = [OrderStatus.PROCESSING, OrderStatus.READY_FOR_SHIPPING]


def status_sources(target: OrderStatus) -> List[OrderStatus]:
    """Statuses from which `target` is reachable."""
    return [s for s in OrderStatus if can_transition_status(s, target)]


def payment_sources(target: PaymentStatus) -> List[PaymentStatus]:
    """Payment statuses from which `target` is reachable."""
    return [p for p in PaymentStatus if can_transition_payment(p, target)]


class OrderStateMachine:

    def __init__(
        self,
        store: Store,
        ledger: InventoryLedger,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.notifier = notifier or Notifier()

    # ----- Reads -----

    async def get(self, order_id: str, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        async with self.store.join(uow) as tx:
            order = await tx.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    async def find_by_reference(self, reference: str, uow: Optional[UnitOfWork] = None) -> Optional[OrderRecord]:
        """Resolve our payment reference (or the provider's) to its order."""
        async with self.store.join(uow) as tx:
            payment = await tx.payments.get_by_reference(reference)
            if payment is None:
                return None
            return await tx.orders.get(payment.order_id)

    # ----- Transitions -----

    async def create(self, order: OrderRecord, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        """Persist a new order as PENDING/PENDING. Stock must already be reserved."""
        if order.status != OrderStatus.PENDING or order.payment_status != PaymentStatus.PENDING:
            raise IllegalTransition(
                f"New order {order.id} must start PENDING/PENDING",
                order_id=order.id,
                current_status=order.status.value,
                current_payment_status=order.payment_status.value,
                attempted="create",
            )
        async with self.store.join(uow) as tx:
            created = await tx.orders.add(order)
        logger.info(f"Order {created.order_number} created ({created.total} {created.currency})")
        return created

    async def mark_paid(
        self,
        order_id: str,
        provider_transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        verification_response: Optional[Dict[str, Any]] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> OrderRecord:
        """
        PENDING/PENDING -> PROCESSING/SUCCESSFUL, committing the order's stock.

        Raises:
            IllegalTransition: the order was already settled (or cancelled/failed).
            PaymentVerificationFailed: `amount` does not match the order total.
        """
        async with self.store.join(uow) as tx:
            if amount is not None:
                current = await self._require(tx, order_id)
                if Decimal(amount) != current.total:
                    raise PaymentVerificationFailed(
                        f"Paid amount {amount} does not match order total {current.total}",
                        details={"order_id": order_id, "amount": str(amount), "total": str(current.total)},
                    )

            order = await self._transition(
                tx,
                order_id,
                status_sources(OrderStatus.PROCESSING),
                payment_sources(PaymentStatus.SUCCESSFUL),
                "mark_paid",
                status=OrderStatus.PROCESSING,
                payment_status=PaymentStatus.SUCCESSFUL,
                paid_at=datetime.now(timezone.utc),
                status_message=None,
            )
            await self.ledger.commit_order(order_id, uow=tx)

            payment = await tx.payments.get_active_for_order(order_id)
            if payment is not None:
                await tx.payments.update(
                    payment.id,
                    ACTIVE_PAYMENT_STATUSES,
                    status=PaymentRecordStatus.SUCCESSFUL,
                    provider_transaction_id=provider_transaction_id,
                    verification_response=verification_response,
                )

        logger.info(f"Order {order.order_number} paid (txn={provider_transaction_id})")
        await self.notifier.order_confirmed(order)
        return order

    async def mark_payment_failed(self, order_id: str, reason: str, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        """Payment PENDING -> FAILED/FAILED, releasing the order's stock."""
        return await self._fail(order_id, reason, "mark_payment_failed", uow)

    async def fail_initialization(self, order_id: str, reason: str, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        """The provider never started the payment."""
        return await self._fail(order_id, reason, "fail_initialization", uow)

    async def expire(self, order_id: str, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        """The reservation timed out before any payment result arrived."""
        return await self._fail(order_id, "Reservation expired before payment", "expire", uow)

    async def cancel(
        self,
        order_id: str,
        reason: str,
        refund_queued: bool = False,
        refunded: bool = False,
        uow: Optional[UnitOfWork] = None,
    ) -> OrderRecord:
        """
        Cancel an order.

        Before payment: CANCELLED/FAILED, reservations released.
        After payment: only when the caller has refunded (payment -> REFUNDED)
        or queued a refund (payment stays SUCCESSFUL until it completes);
        committed stock is restocked either way. SHIPPED orders cannot be
        cancelled.
        """
        async with self.store.join(uow) as tx:
            current = await self._require(tx, order_id)

            if current.payment_status == PaymentStatus.PENDING:
                order = await self._transition(
                    tx,
                    order_id,
                    [OrderStatus.PENDING],
                    [PaymentStatus.PENDING],
                    "cancel",
                    status=OrderStatus.CANCELLED,
                    payment_status=PaymentStatus.FAILED,
                    status_message=reason,
                )
                await self.ledger.release_order(order_id, reason=f"order cancelled: {reason}", uow=tx)
                await self._close_payment(tx, order_id, PaymentRecordStatus.FAILED)

            elif current.payment_status == PaymentStatus.SUCCESSFUL:
                if not (refunded or refund_queued):
                    raise IllegalTransition(
                        f"Paid order {order_id} cannot be cancelled without a refund",
                        order_id=order_id,
                        current_status=current.status.value,
                        current_payment_status=current.payment_status.value,
                        attempted="cancel",
                    )
                changes = {"status": OrderStatus.CANCELLED, "status_message": reason}
                if refunded:
                    changes["payment_status"] = PaymentStatus.REFUNDED
                order = await self._transition(
                    tx,
                    order_id,
                    CANCELLABLE_AFTER_PAYMENT,
                    [PaymentStatus.SUCCESSFUL],
                    "cancel",
                    **changes,
                )
                await self.ledger.restock(order_id, reason=f"order cancelled: {reason}", uow=tx)
                if refunded:
                    payment = await tx.payments.get_settled_for_order(order_id)
                    if payment is not None:
                        await tx.payments.update(
                            payment.id,
                            status=PaymentRecordStatus.REFUNDED,
                            refunded_amount=payment.amount,
                        )

            else:
                raise self._illegal(current, "cancel")

        logger.info(
            f"Order {order.order_number} cancelled "
            f"(refunded={refunded}, refund_queued={refund_queued}): {reason}"
        )
        await self.notifier.order_cancelled(order, reason)
        return order

    async def advance(self, order_id: str, to_status: OrderStatus, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        """One fulfilment step forward. Requires a successful payment."""
        sources = [s for s, nxt in FULFILMENT_STEPS.items() if nxt == to_status]
        async with self.store.join(uow) as tx:
            if not sources:
                raise self._illegal(await self._require(tx, order_id), f"advance to {to_status.value}")
            order = await self._transition(
                tx,
                order_id,
                sources,
                [PaymentStatus.SUCCESSFUL],
                f"advance to {to_status.value}",
                status=to_status,
                status_message=None,
            )
        logger.info(f"Order {order.order_number} advanced to {to_status.value}")
        return order

    async def mark_refunded(
        self,
        order_id: str,
        amount: Optional[Decimal] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> OrderRecord:
        """
        Record a refund. A refund that brings the refunded total to the order
        total moves payment SUCCESSFUL -> REFUNDED; anything less is recorded
        on the payment record and leaves the payment SUCCESSFUL.
        """
        async with self.store.join(uow) as tx:
            current = await self._require(tx, order_id)
            payment = await tx.payments.get_settled_for_order(order_id)
            already = payment.refunded_amount if payment else Decimal("0")
            remaining = current.total - already
            refund = Decimal(amount) if amount is not None else remaining

            if refund <= 0 or refund > remaining:
                raise IllegalTransition(
                    f"Refund of {refund} invalid for order {order_id} ({remaining} refundable)",
                    order_id=order_id,
                    current_status=current.status.value,
                    current_payment_status=current.payment_status.value,
                    attempted="mark_refunded",
                )

            if refund == remaining:
                order = await self._transition(
                    tx,
                    order_id,
                    ALL_STATUSES,
                    payment_sources(PaymentStatus.REFUNDED),
                    "mark_refunded",
                    payment_status=PaymentStatus.REFUNDED,
                )
                if payment is not None:
                    await tx.payments.update(
                        payment.id,
                        status=PaymentRecordStatus.REFUNDED,
                        refunded_amount=current.total,
                    )
            else:
                if payment is None:
                    raise IllegalTransition(
                        f"Order {order_id} has no payment record to refund partially",
                        order_id=order_id,
                        attempted="mark_refunded",
                    )
                order = await self._transition(
                    tx,
                    order_id,
                    ALL_STATUSES,
                    [PaymentStatus.SUCCESSFUL],
                    "mark_refunded",
                    status_message=f"Partially refunded {already + refund} of {current.total}",
                )
                await tx.payments.add_refunded_amount(payment.id, refund)

        logger.info(f"Order {order.order_number} refunded {refund} {order.currency}")
        await self.notifier.refund_processed(order, refund)
        return order

    # ----- Helpers -----

    async def _fail(self, order_id: str, reason: str, attempted: str, uow: Optional[UnitOfWork]) -> OrderRecord:
        async with self.store.join(uow) as tx:
            order = await self._transition(
                tx,
                order_id,
                status_sources(OrderStatus.FAILED),
                payment_sources(PaymentStatus.FAILED),
                attempted,
                status=OrderStatus.FAILED,
                payment_status=PaymentStatus.FAILED,
                status_message=reason,
            )
            await self.ledger.release_order(order_id, reason=f"{attempted}: {reason}", uow=tx)
            await self._close_payment(tx, order_id, PaymentRecordStatus.FAILED)

        logger.info(f"Order {order.order_number} failed ({attempted}): {reason}")
        await self.notifier.payment_failed(order, reason)
        return order

    async def _transition(
        self,
        tx: UnitOfWork,
        order_id: str,
        expected_statuses: Collection[OrderStatus],
        expected_payment_statuses: Collection[PaymentStatus],
        attempted: str,
        **changes,
    ) -> OrderRecord:
        order = await tx.orders.compare_and_set(
            order_id, expected_statuses, expected_payment_statuses, **changes
        )
        if order is not None:
            return order
        raise self._illegal(await self._require(tx, order_id), attempted)

    async def _require(self, tx: UnitOfWork, order_id: str) -> OrderRecord:
        order = await tx.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    async def _close_payment(self, tx: UnitOfWork, order_id: str, status: PaymentRecordStatus) -> None:
        payment = await tx.payments.get_active_for_order(order_id)
        if payment is not None:
            await tx.payments.update(payment.id, ACTIVE_PAYMENT_STATUSES, status=status)

    def _illegal(self, order: OrderRecord, attempted: str) -> IllegalTransition:
        logger.warning(
            f"Illegal transition '{attempted}' for order {order.id} "
            f"in {order.status.value}/{order.payment_status.value}"
        )
        return IllegalTransition(
            f"Cannot {attempted} order {order.id} in state "
            f"{order.status.value}/{order.payment_status.value}",
            order_id=order.id,
            current_status=order.status.value,
            current_payment_status=order.payment_status.value,
            attempted=attempted,
        )
