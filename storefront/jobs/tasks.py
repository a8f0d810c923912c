"""
Settlement Jobs

Run by the arq worker, or in-process by InlineTaskDispatcher. Either way
ctx["services"] holds the wired Services and ctx["job_try"] the attempt.

Provider failures raise arq.Retry with a growing delay until the last of
JOB_MAX_TRIES attempts, which raises the provider error instead.
"""
import logging
from typing import Any, Dict

from arq import Retry

from storefront.core.config import settings
from storefront.core.exceptions import OrderNotFound, PaymentError
from storefront.services.alerting import alert_refund_failure
from storefront.services.notifications import LoggingNotificationProvider

logger = logging.getLogger(__name__)


def _is_last_try(ctx: dict) -> bool:
    return ctx.get("job_try", 1) >= settings.JOB_MAX_TRIES


def _retry(ctx: dict, job: str, error: PaymentError) -> Retry:
    job_try = ctx.get("job_try", 1)
    logger.warning(f"{job} attempt {job_try} failed: {error.message}")
    return Retry(defer=job_try * settings.JOB_RETRY_DELAY_SECONDS)


async def process_payment_webhook(ctx: dict, provider: str, event: Dict[str, Any]) -> dict:
    """
    Settle the order behind an admitted webhook event.

    On the last attempt the dedup slot is released, so the provider's own
    redelivery of the event is admitted again.
    """
    services = ctx["services"]
    try:
        result = await services.checkout.process_webhook_event(provider, event)
    except PaymentError as e:
        if not _is_last_try(ctx):
            raise _retry(ctx, "process_payment_webhook", e) from e
        logger.error(
            f"Webhook {provider}:{event.get('event_id')} failed after {ctx.get('job_try', 1)} attempts: "
            f"{e.message}; awaiting redelivery"
        )
        await services.dedup.forget(provider, event.get("event_id"))
        raise
    logger.info(
        f"Webhook {provider}:{event.get('event_id')} -> {result.outcome.value} "
        f"(order={result.order_id})"
    )
    return {"status": result.outcome.value, "order_id": result.order_id}


async def process_queued_refund(ctx: dict, order_id: str) -> dict:
    """Retry the refund of a cancelled paid order. Retried on provider errors."""
    services = ctx["services"]
    try:
        order = await services.checkout.process_queued_refund(order_id)
    except PaymentError as e:
        if not _is_last_try(ctx):
            raise _retry(ctx, "process_queued_refund", e) from e
        logger.error(f"Queued refund for order {order_id} abandoned: {e.message}")
        await alert_refund_failure(order_id, None, e.message, queued=False)
        raise
    if order is None:
        return {"status": "skipped", "order_id": order_id}
    return {"status": "refunded", "order_id": order_id}


async def send_order_email(ctx: dict, template: str, order_id: str, context: Dict[str, Any]) -> dict:
    """
    Deliver an order notification.

    No mail provider is wired in yet; the message is logged.
    """
    services = ctx["services"]
    try:
        order = await services.orders.get(order_id)
    except OrderNotFound:
        logger.warning(f"Skipping {template} email: order {order_id} not found")
        return {"status": "skipped", "reason": "order_not_found"}

    await LoggingNotificationProvider().send(template, order, **(context or {}))
    return {"status": "sent", "template": template}


JOBS = [
    process_payment_webhook,
    process_queued_refund,
    send_order_email,
]
