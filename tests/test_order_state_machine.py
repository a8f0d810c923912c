"""
Tests for the order state machine: guarded transitions, exactly-once
settlement and the inventory effects of each transition.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from storefront.core.exceptions import IllegalTransition, OrderNotFound, PaymentVerificationFailed
from storefront.models import OrderStatus, PaymentRecordStatus, PaymentStatus, ReservationState
from storefront.repositories import OrderLine, OrderRecord, PaymentRecord
from storefront.services.notifications import Notifier
from storefront.services.order_state_machine import OrderStateMachine, payment_sources, status_sources

from conftest import stock_of


async def place_order(store, ledger, orders, order_id="order-1", quantity=2, price="2500.00", reference=None):
    await ledger.reserve(1, quantity, order_id)
    order = await orders.create(OrderRecord(
        id=order_id,
        order_number=f"ORD-{order_id}",
        user_id="user-1",
        lines=[OrderLine(product_id=1, product_name="Product 1", quantity=quantity, unit_price=Decimal(price))],
        total=Decimal(price) * quantity,
        currency="NGN",
        payment_method="paystack",
    ))
    if reference:
        async with store.transaction() as tx:
            await tx.payments.add(PaymentRecord(
                provider="paystack",
                order_id=order_id,
                reference=reference,
                amount=order.total,
            ))
            await tx.orders.set_payment_reference(order_id, reference)
    return order


@pytest.fixture
def notifier():
    provider = AsyncMock()
    return Notifier(provider)


@pytest.fixture
def machine(store, ledger, notifier):
    return OrderStateMachine(store, ledger, notifier)


class TestTransitionTables:

    def test_sources_follow_tables(self):
        assert OrderStatus.PENDING in status_sources(OrderStatus.PROCESSING)
        assert OrderStatus.DELIVERED not in status_sources(OrderStatus.CANCELLED)
        assert payment_sources(PaymentStatus.REFUNDED) == [PaymentStatus.SUCCESSFUL]
        assert payment_sources(PaymentStatus.SUCCESSFUL) == [PaymentStatus.PENDING]


class TestMarkPaid:

    @pytest.mark.asyncio
    async def test_mark_paid_commits_stock(self, store, ledger, machine, seed, notifier):
        await seed(1, 5)
        await place_order(store, ledger, machine, reference="PAY-1")

        order = await machine.mark_paid("order-1", provider_transaction_id="txn-1", amount=Decimal("5000.00"))

        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.SUCCESSFUL
        assert order.paid_at is not None
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (3, 0)
        async with store.transaction() as tx:
            payment = await tx.payments.get_by_reference("PAY-1")
        assert payment.status == PaymentRecordStatus.SUCCESSFUL
        assert payment.provider_transaction_id == "txn-1"
        notifier.provider.send.assert_awaited_once()
        assert notifier.provider.send.await_args.args[0] == "order_confirmed"

    @pytest.mark.asyncio
    async def test_second_mark_paid_is_illegal_and_changes_nothing(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)
        await machine.mark_paid("order-1")

        with pytest.raises(IllegalTransition) as exc_info:
            await machine.mark_paid("order-1")

        assert exc_info.value.details["current_status"] == "PROCESSING"
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (3, 0)

    @pytest.mark.asyncio
    async def test_concurrent_mark_paid_settles_once(self, store, ledger, machine, seed, notifier):
        await seed(1, 5)
        await place_order(store, ledger, machine)

        results = await asyncio.gather(
            *[machine.mark_paid("order-1") for _ in range(5)],
            return_exceptions=True,
        )

        paid = [r for r in results if isinstance(r, OrderRecord)]
        illegal = [r for r in results if isinstance(r, IllegalTransition)]
        assert len(paid) == 1
        assert len(illegal) == 4
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (3, 0)
        assert notifier.provider.send.await_count == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)

        with pytest.raises(PaymentVerificationFailed):
            await machine.mark_paid("order-1", amount=Decimal("4999.99"))

        order = await machine.get("order-1")
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_order(self, machine):
        with pytest.raises(OrderNotFound):
            await machine.mark_paid("missing")


class TestFailure:

    @pytest.mark.asyncio
    async def test_payment_failed_releases_stock(self, store, ledger, machine, seed, notifier):
        await seed(1, 5)
        await place_order(store, ledger, machine, reference="PAY-1")

        order = await machine.mark_payment_failed("order-1", "Declined")

        assert (order.status, order.payment_status) == (OrderStatus.FAILED, PaymentStatus.FAILED)
        assert order.status_message == "Declined"
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (5, 0)
        async with store.transaction() as tx:
            payment = await tx.payments.get_by_reference("PAY-1")
        assert payment.status == PaymentRecordStatus.FAILED
        assert notifier.provider.send.await_args.args[0] == "payment_failed"

    @pytest.mark.asyncio
    async def test_success_after_expiry_is_illegal(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)
        await machine.expire("order-1")

        with pytest.raises(IllegalTransition):
            await machine.mark_paid("order-1")

        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (5, 0)


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_before_payment(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)

        order = await machine.cancel("order-1", "changed my mind")

        assert (order.status, order.payment_status) == (OrderStatus.CANCELLED, PaymentStatus.FAILED)
        assert (await stock_of(store, 1)).available_quantity == 5

    @pytest.mark.asyncio
    async def test_paid_cancel_requires_refund(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)
        await machine.mark_paid("order-1")

        with pytest.raises(IllegalTransition):
            await machine.cancel("order-1", "too late")

    @pytest.mark.asyncio
    async def test_paid_cancel_with_refund_restocks(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine, reference="PAY-1")
        await machine.mark_paid("order-1")

        order = await machine.cancel("order-1", "refunded", refunded=True)

        assert (order.status, order.payment_status) == (OrderStatus.CANCELLED, PaymentStatus.REFUNDED)
        assert (await stock_of(store, 1)).available_quantity == 5
        async with store.transaction() as tx:
            payment = await tx.payments.get_by_reference("PAY-1")
        assert payment.status == PaymentRecordStatus.REFUNDED
        assert payment.refunded_amount == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_paid_cancel_with_queued_refund_keeps_payment_successful(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)
        await machine.mark_paid("order-1")

        order = await machine.cancel("order-1", "refund queued", refund_queued=True)

        assert (order.status, order.payment_status) == (OrderStatus.CANCELLED, PaymentStatus.SUCCESSFUL)

    @pytest.mark.asyncio
    async def test_shipped_order_cannot_be_cancelled(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)
        await machine.mark_paid("order-1")
        await machine.advance("order-1", OrderStatus.READY_FOR_SHIPPING)
        await machine.advance("order-1", OrderStatus.SHIPPED)

        with pytest.raises(IllegalTransition):
            await machine.cancel("order-1", "too late", refunded=True)


class TestAdvanceAndRefund:

    @pytest.mark.asyncio
    async def test_advance_requires_payment(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)

        with pytest.raises(IllegalTransition):
            await machine.advance("order-1", OrderStatus.READY_FOR_SHIPPING)

    @pytest.mark.asyncio
    async def test_advance_skipping_a_step_is_illegal(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)
        await machine.mark_paid("order-1")

        with pytest.raises(IllegalTransition):
            await machine.advance("order-1", OrderStatus.SHIPPED)

    @pytest.mark.asyncio
    async def test_partial_then_full_refund(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine, reference="PAY-1")
        await machine.mark_paid("order-1")

        partial = await machine.mark_refunded("order-1", Decimal("1000.00"))
        assert partial.payment_status == PaymentStatus.SUCCESSFUL

        full = await machine.mark_refunded("order-1")
        assert full.payment_status == PaymentStatus.REFUNDED
        async with store.transaction() as tx:
            payment = await tx.payments.get_by_reference("PAY-1")
        assert payment.refunded_amount == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_refund_over_remaining_rejected(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine, reference="PAY-1")
        await machine.mark_paid("order-1")

        with pytest.raises(IllegalTransition):
            await machine.mark_refunded("order-1", Decimal("6000.00"))

    @pytest.mark.asyncio
    async def test_refund_of_unpaid_order_is_illegal(self, store, ledger, machine, seed):
        await seed(1, 5)
        await place_order(store, ledger, machine)

        with pytest.raises(IllegalTransition):
            await machine.mark_refunded("order-1")
