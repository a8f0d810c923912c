"""
Tests for the inventory ledger: conditional reservation, commit/release
bookkeeping and the audit log.
"""
import asyncio

import pytest

from storefront.core.exceptions import InsufficientStock, InvariantViolation, ProductNotFound
from storefront.models import InventoryLogKind, ReservationState
from storefront.repositories import ReservationRecord

from conftest import stock_of


class TestReserve:

    @pytest.mark.asyncio
    async def test_reserve_moves_units_to_reserved(self, store, ledger, seed):
        await seed(1, 5)

        reservation = await ledger.reserve(1, 2, "order-1")

        stock = await stock_of(store, 1)
        assert stock.available_quantity == 3
        assert stock.reserved_quantity == 2
        assert reservation.state == ReservationState.ACTIVE
        assert reservation.order_id == "order-1"

    @pytest.mark.asyncio
    async def test_insufficient_stock_writes_nothing(self, store, ledger, seed):
        await seed(1, 1)

        with pytest.raises(InsufficientStock) as exc_info:
            await ledger.reserve(1, 2, "order-1")

        assert exc_info.value.details["available_qty"] == 1
        assert exc_info.value.details["requested_qty"] == 2
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (1, 0)
        assert await ledger.get_log(1) == []

    @pytest.mark.asyncio
    async def test_unknown_product(self, ledger):
        with pytest.raises(ProductNotFound):
            await ledger.reserve(99, 1, "order-1")

    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected(self, ledger, seed):
        await seed(1, 5)
        with pytest.raises(ValueError):
            await ledger.reserve(1, 0, "order-1")

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_oversell(self, store, ledger, seed):
        """N units, N+k concurrent buyers of one unit each: exactly N succeed."""
        await seed(1, 5)

        results = await asyncio.gather(
            *[ledger.reserve(1, 1, f"order-{i}") for i in range(8)],
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, ReservationRecord)]
        rejected = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(succeeded) == 5
        assert len(rejected) == 3
        stock = await stock_of(store, 1)
        assert stock.available_quantity == 0
        assert stock.reserved_quantity == 5


class TestReserveAll:

    @pytest.mark.asyncio
    async def test_all_lines_reserved_and_merged(self, store, ledger, seed):
        await seed(1, 5)
        await seed(2, 5)

        reservations = await ledger.reserve_all([(2, 1), (1, 2), (2, 2)], "order-1")

        assert [(r.product_id, r.quantity) for r in reservations] == [(1, 2), (2, 3)]
        assert (await stock_of(store, 2)).available_quantity == 2

    @pytest.mark.asyncio
    async def test_failing_line_undoes_earlier_lines(self, store, ledger, seed):
        await seed(1, 5)
        await seed(2, 1)

        with pytest.raises(InsufficientStock) as exc_info:
            await ledger.reserve_all([(1, 2), (2, 3)], "order-1")

        assert exc_info.value.product_id == 2
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (5, 0)
        async with store.transaction() as tx:
            assert await tx.reservations.list_for_order("order-1") == []


class TestResolution:

    @pytest.mark.asyncio
    async def test_commit_order_consumes_reserved(self, store, ledger, seed):
        await seed(1, 5)
        await ledger.reserve(1, 2, "order-1")

        committed = await ledger.commit_order("order-1")

        assert len(committed) == 1
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (3, 0)

    @pytest.mark.asyncio
    async def test_commit_order_is_resolved_once(self, store, ledger, seed):
        await seed(1, 5)
        await ledger.reserve(1, 2, "order-1")

        await ledger.commit_order("order-1")
        second = await ledger.commit_order("order-1")

        assert second == []
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (3, 0)

    @pytest.mark.asyncio
    async def test_release_order_restores_available(self, store, ledger, seed):
        await seed(1, 5)
        await ledger.reserve_all([(1, 2)], "order-1")

        released = await ledger.release_order("order-1", reason="payment failed")

        assert len(released) == 1
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (5, 0)
        async with store.transaction() as tx:
            [reservation] = await tx.reservations.list_for_order("order-1")
        assert reservation.state == ReservationState.RELEASED
        assert reservation.resolved_at is not None

    @pytest.mark.asyncio
    async def test_commit_more_than_reserved_is_invariant_violation(self, store, ledger, seed, monkeypatch):
        alerts = []

        async def fake_alert(product_id, operation, details):
            alerts.append((product_id, operation))
            return True

        monkeypatch.setattr("storefront.services.inventory_ledger.alert_invariant_violation", fake_alert)
        await seed(1, 5)

        with pytest.raises(InvariantViolation):
            await ledger.commit(1, 1, "order-x")

        assert alerts == [(1, "commit")]
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (5, 0)
    @pytest.mark.asyncio
    async def test_violation_alert_sent_after_rollback(self, store, ledger, seed, monkeypatch):
        lock_held = []

        async def fake_alert(product_id, operation, details):
            lock_held.append(store._lock.locked())
            return True

        monkeypatch.setattr("storefront.services.inventory_ledger.alert_invariant_violation", fake_alert)
        await seed(1, 5)

        with pytest.raises(InvariantViolation):
            await ledger.release(1, 2, "order-x")

        assert lock_held == [False]



class TestAdjustments:

    @pytest.mark.asyncio
    async def test_adjust_changes_available_only(self, store, ledger, seed):
        await seed(1, 5)
        await ledger.reserve(1, 1, "order-1")

        change = await ledger.adjust(1, 3, "recount")

        assert change.new_available == 7
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (7, 1)

    @pytest.mark.asyncio
    async def test_adjust_below_zero_rejected(self, store, ledger, seed, monkeypatch):
        monkeypatch.setattr(
            "storefront.services.inventory_ledger.alert_invariant_violation",
            lambda *args, **kwargs: asyncio.sleep(0),
        )
        await seed(1, 2)

        with pytest.raises(InvariantViolation):
            await ledger.adjust(1, -3, "damaged")

        assert (await stock_of(store, 1)).available_quantity == 2

    @pytest.mark.asyncio
    async def test_restock_returns_committed_units(self, store, ledger, seed):
        await seed(1, 5)
        await ledger.reserve(1, 2, "order-1")
        await ledger.commit_order("order-1")

        units = await ledger.restock("order-1", reason="order cancelled")

        assert units == 2
        stock = await stock_of(store, 1)
        assert (stock.available_quantity, stock.reserved_quantity) == (5, 0)


class TestAuditLog:

    @pytest.mark.asyncio
    async def test_round_trip_log(self, ledger, seed):
        """5 in stock, reserve 2, commit: log holds RESERVE then COMMIT with snapshots."""
        await seed(1, 5)
        await ledger.reserve(1, 2, "order-1")
        await ledger.commit_order("order-1")

        log = await ledger.get_log(1)

        assert [entry.kind for entry in log] == [InventoryLogKind.COMMIT, InventoryLogKind.RESERVE]
        commit, reserve = log
        assert (reserve.delta, reserve.previous_quantity, reserve.new_quantity) == (-2, 5, 3)
        assert commit.order_id == "order-1"
        assert commit.new_quantity == 3


class TestLowStock:

    @pytest.fixture
    def low_stock_alerts(self, monkeypatch):
        alerts = []

        async def fake_alert(product_id, available, threshold):
            alerts.append((product_id, available, threshold))
            return True

        monkeypatch.setattr("storefront.services.inventory_ledger.alert_low_stock", fake_alert)
        return alerts

    @pytest.mark.asyncio
    async def test_crossing_threshold_alerts_once(self, ledger, seed, low_stock_alerts):
        await seed(1, 8, low_stock_threshold=5)

        await ledger.reserve(1, 2, "order-1")
        await ledger.reserve(1, 2, "order-2")
        await ledger.reserve(1, 1, "order-3")

        assert low_stock_alerts == [(1, 4, 5)]

    @pytest.mark.asyncio
    async def test_adjustment_down_alerts(self, ledger, seed, low_stock_alerts):
        await seed(1, 10, low_stock_threshold=3)

        await ledger.adjust(1, -8, "water damage")

        assert low_stock_alerts == [(1, 2, 3)]

    @pytest.mark.asyncio
    async def test_rolled_back_reservation_does_not_alert(self, ledger, seed, low_stock_alerts):
        await seed(1, 8, low_stock_threshold=5)
        await seed(2, 1)

        with pytest.raises(InsufficientStock):
            await ledger.reserve_all([(1, 4), (2, 3)], "order-1")

        assert low_stock_alerts == []

    @pytest.mark.asyncio
    async def test_restock_above_threshold_is_quiet(self, ledger, seed, low_stock_alerts):
        await seed(1, 2, low_stock_threshold=5)

        await ledger.adjust(1, 10, "delivery")

        assert low_stock_alerts == []

    @pytest.mark.asyncio
    async def test_low_stock_listing(self, ledger, seed):
        await seed(1, 3)
        await seed(2, 10)
        await seed(3, 0)
        await seed(4, 6, low_stock_threshold=6)

        low = await ledger.low_stock()

        assert [(s.product_id, s.available_quantity) for s in low] == [(3, 0), (1, 3), (4, 6)]
        assert all(s.is_low_stock for s in low)
