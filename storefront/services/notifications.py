"""
Order notification hooks

Fire-and-forget: a notification that cannot be sent is logged and never
fails the transition that triggered it. Actual email delivery lives behind
the send_order_email job.
"""
import logging
from decimal import Decimal
from typing import Optional, Protocol

from storefront.repositories import OrderRecord
from storefront.services.dispatch import TaskDispatcher

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = "order_confirmed"
PAYMENT_FAILED = "payment_failed"
ORDER_CANCELLED = "order_cancelled"
REFUND_PROCESSED = "refund_processed"


class NotificationProvider(Protocol):
    """Protocol for notification providers."""

    async def send(self, template: str, order: OrderRecord, **context) -> None:
        ...


class LoggingNotificationProvider:
    """Development provider: logs instead of sending."""

    async def send(self, template: str, order: OrderRecord, **context) -> None:
        logger.info(
            f"[MOCK EMAIL] {template} for order {order.order_number}\n"
            f"  User: {order.user_id}\n"
            f"  Total: {order.total} {order.currency}\n"
            f"  Context: {context}"
        )


class QueueNotificationProvider:
    """Queues a send_order_email job per notification."""

    def __init__(self, dispatcher: TaskDispatcher):
        self.dispatcher = dispatcher

    async def send(self, template: str, order: OrderRecord, **context) -> None:
        await self.dispatcher.enqueue(
            "send_order_email",
            template=template,
            order_id=order.id,
            context={k: str(v) for k, v in context.items()},
        )


class Notifier:
    """Notification wrapper used by the order state machine."""

    def __init__(self, provider: Optional[NotificationProvider] = None):
        self.provider = provider or LoggingNotificationProvider()

    async def _send(self, template: str, order: OrderRecord, **context) -> bool:
        try:
            await self.provider.send(template, order, **context)
            return True
        except Exception as e:
            logger.error(f"Failed to send {template} notification for order {order.id}: {e}")
            return False

    async def order_confirmed(self, order: OrderRecord) -> bool:
        return await self._send(ORDER_CONFIRMED, order)

    async def payment_failed(self, order: OrderRecord, reason: Optional[str] = None) -> bool:
        return await self._send(PAYMENT_FAILED, order, reason=reason or "")

    async def order_cancelled(self, order: OrderRecord, reason: Optional[str] = None) -> bool:
        return await self._send(ORDER_CANCELLED, order, reason=reason or "")

    async def refund_processed(self, order: OrderRecord, amount: Decimal) -> bool:
        return await self._send(REFUND_PROCESSED, order, amount=amount)
