"""
Service wiring shared by the API process and the arq worker.

Redis, the task dispatcher, the store and the gateways are passed in; nothing
here reaches for a global client.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from storefront.modules.payments import GatewayRegistry
from storefront.repositories import Store, build_store
from storefront.services.catalog import Catalog, StoreCatalog
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.dispatch import InlineTaskDispatcher, TaskDispatcher
from storefront.services.inventory_ledger import InventoryLedger
from storefront.services.notifications import Notifier, QueueNotificationProvider
from storefront.services.order_state_machine import OrderStateMachine
from storefront.services.reservation_sweeper import ReservationSweeper
from storefront.services.webhook_dedup import WebhookDeduplicator, build_deduplicator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Store
    ledger: InventoryLedger
    orders: OrderStateMachine
    gateways: GatewayRegistry
    dedup: WebhookDeduplicator
    catalog: Catalog
    dispatcher: TaskDispatcher
    checkout: CheckoutOrchestrator
    sweeper: ReservationSweeper

    async def close(self) -> None:
        await self.dispatcher.close()
        await self.gateways.close()
        await self.store.close()


def build_services(
    settings,
    dispatcher: TaskDispatcher,
    redis_client: Optional[redis.Redis] = None,
    store: Optional[Store] = None,
    gateways: Optional[GatewayRegistry] = None,
    catalog: Optional[Catalog] = None,
) -> Services:
    store = store or build_store(settings.STORAGE_BACKEND)
    ledger = InventoryLedger(store)
    orders = OrderStateMachine(store, ledger, Notifier(QueueNotificationProvider(dispatcher)))
    gateways = gateways or GatewayRegistry(settings)
    dedup = build_deduplicator(redis_client, settings.WEBHOOK_DEDUP_WINDOW_HOURS)
    catalog = catalog or StoreCatalog(store)

    checkout = CheckoutOrchestrator(
        store=store,
        ledger=ledger,
        orders=orders,
        gateways=gateways,
        dedup=dedup,
        catalog=catalog,
        dispatcher=dispatcher,
        currency=settings.STORE_CURRENCY,
        default_provider=settings.DEFAULT_PAYMENT_PROVIDER,
        callback_url=settings.payment_callback_url,
    )
    sweeper = ReservationSweeper(
        store,
        ledger,
        orders,
        timeout_minutes=settings.RESERVATION_TIMEOUT_MINUTES,
        alert_attempts=settings.RESERVATION_SWEEP_ALERT_ATTEMPTS,
        redis_client=redis_client,
        lock_seconds=settings.RESERVATION_SWEEP_LOCK_SECONDS,
    )

    services = Services(
        store=store,
        ledger=ledger,
        orders=orders,
        gateways=gateways,
        dedup=dedup,
        catalog=catalog,
        dispatcher=dispatcher,
        checkout=checkout,
        sweeper=sweeper,
    )
    if isinstance(dispatcher, InlineTaskDispatcher):
        register_inline_jobs(dispatcher, services)
    return services


def register_inline_jobs(dispatcher: InlineTaskDispatcher, services: Services) -> None:
    """Run the worker's job functions in-process with the same ctx shape arq passes."""
    from storefront.jobs.tasks import JOBS

    ctx = {"services": services}
    for job in JOBS:
        dispatcher.register(job.__name__, job, ctx)
    logger.info(f"Inline job dispatch enabled for {len(JOBS)} jobs")
