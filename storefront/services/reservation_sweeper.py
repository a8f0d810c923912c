"""
Reservation Sweeper

Releases stock held by checkouts that never completed. Runs on an interval
from the application lifespan.

Each stale ACTIVE reservation is handled by what its order says:
- no order (creation crashed after reserving) -> release
- payment PENDING -> expire the order (FAILED/FAILED, stock released)
- payment SUCCESSFUL (crashed between settle and commit) -> commit
- anything else -> release

One run at a time: an in-process lock, plus a Redis lock when Redis is
configured so that only one instance sweeps.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from storefront.core.exceptions import IllegalTransition
from storefront.core.redis_client import acquire_lock, release_lock
from storefront.models import PaymentStatus, ReservationState
from storefront.repositories import ReservationRecord, Store
from storefront.services.alerting import alert_stuck_reservation
from storefront.services.inventory_ledger import InventoryLedger
from storefront.services.order_state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

SWEEPER_LOCK_NAME = "reservation-sweeper"
SWEEP_BATCH_SIZE = 500


class ReservationSweeper:

    def __init__(
        self,
        store: Store,
        ledger: InventoryLedger,
        orders: OrderStateMachine,
        timeout_minutes: int = 30,
        alert_attempts: int = 3,
        redis_client: Optional[redis.Redis] = None,
        lock_seconds: int = 600,
    ):
        self.store = store
        self.ledger = ledger
        self.orders = orders
        self.timeout = timedelta(minutes=timeout_minutes)
        self.alert_attempts = alert_attempts
        self.redis_client = redis_client
        self.lock_seconds = lock_seconds
        self._lock = asyncio.Lock()
        self.heartbeat: Dict[str, Any] = {
            "last_run": None,
            "last_success": None,
            "records_processed": 0,
            "errors": 0,
        }

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One pass over stale reservations.

        Returns counts; `skipped` is True when another run holds the lock.
        """
        if self._lock.locked():
            logger.info("Reservation sweep already running in this process; skipping")
            return {"skipped": True}

        async with self._lock:
            token = None
            if self.redis_client is not None:
                token = await acquire_lock(self.redis_client, SWEEPER_LOCK_NAME, self.lock_seconds)
                if token is None:
                    logger.info("Reservation sweep running on another instance; skipping")
                    return {"skipped": True}
            try:
                return await self._sweep(now or datetime.now(timezone.utc))
            finally:
                if token is not None:
                    await release_lock(self.redis_client, SWEEPER_LOCK_NAME, token)

    async def _sweep(self, now: datetime) -> Dict[str, Any]:
        stats = {
            "skipped": False,
            "orders_processed": 0,
            "orders_expired": 0,
            "reservations_released": 0,
            "reservations_committed": 0,
            "failures": 0,
        }

        async with self.store.transaction() as tx:
            stale = await tx.reservations.list_stale(now - self.timeout, SWEEP_BATCH_SIZE)
        if not stale:
            return stats

        by_order: Dict[str, List[ReservationRecord]] = OrderedDict()
        for reservation in stale:
            by_order.setdefault(reservation.order_id, []).append(reservation)

        for order_id, reservations in by_order.items():
            try:
                await self._resolve_order(order_id, reservations, stats)
                stats["orders_processed"] += 1
            except Exception as e:
                stats["failures"] += 1
                logger.error(f"Sweep of order {order_id} failed: {e}", exc_info=True)
                await self._record_failure(reservations, str(e))

        logger.info(
            f"Reservation sweep: {stats['orders_processed']} orders, "
            f"{stats['reservations_released']} released, "
            f"{stats['reservations_committed']} committed, "
            f"{stats['failures']} failures"
        )
        return stats

    async def _resolve_order(self, order_id: str, reservations: List[ReservationRecord], stats: Dict[str, Any]):
        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id)

        if order is None:
            for reservation in reservations:
                if await self.ledger.resolve_reservation(
                    reservation, ReservationState.RELEASED, "orphaned reservation expired"
                ):
                    stats["reservations_released"] += 1
            return

        if order.payment_status == PaymentStatus.PENDING:
            try:
                await self.orders.expire(order_id)
                stats["orders_expired"] += 1
                stats["reservations_released"] += len(reservations)
                return
            except IllegalTransition:
                # Settled while we were looking; fall through on the fresh state
                order = await self.orders.get(order_id)

        if order.payment_status == PaymentStatus.SUCCESSFUL:
            committed = await self.ledger.commit_order(order_id)
            stats["reservations_committed"] += len(committed)
        elif order.payment_status != PaymentStatus.PENDING:
            released = await self.ledger.release_order(
                order_id, reason=f"stale reservation on {order.status.value} order"
            )
            stats["reservations_released"] += len(released)

    async def _record_failure(self, reservations: List[ReservationRecord], error: str) -> None:
        for reservation in reservations:
            try:
                async with self.store.transaction() as tx:
                    attempts = await tx.reservations.increment_sweep_attempts(reservation.id)
            except Exception as e:
                logger.error(f"Could not record sweep attempt for reservation {reservation.id}: {e}")
                continue
            if attempts == self.alert_attempts:
                await alert_stuck_reservation(reservation.id, reservation.order_id, attempts, error)

    # ----- Scheduling -----

    async def run(self) -> Dict[str, Any]:
        """Sweep once and update the heartbeat. Never raises."""
        self.heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()
        try:
            stats = await self.sweep()
        except Exception as e:
            self.heartbeat["errors"] += 1
            logger.error(f"Reservation sweep failed: {e}")
            return {"skipped": False, "error": str(e)}

        if not stats.get("skipped"):
            self.heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
            self.heartbeat["records_processed"] += (
                stats["reservations_released"] + stats["reservations_committed"]
            )
            self.heartbeat["errors"] += stats["failures"]
        return stats

    async def run_forever(self, interval_seconds: int) -> None:
        """Runs until cancelled."""
        logger.info(f"Reservation sweeper started (interval: {interval_seconds}s)")
        while True:
            await self.run()
            await asyncio.sleep(interval_seconds)

    async def reservation_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        cutoff = (now or datetime.now(timezone.utc)) - self.timeout
        async with self.store.transaction() as tx:
            stats = await tx.reservations.stats(cutoff)
        return {**stats, "timeout_minutes": int(self.timeout.total_seconds() // 60), "sweeper": dict(self.heartbeat)}
