"""
Checkout Orchestrator

SAFE CHECKOUT FLOW:
1. Validate and merge the cart, price every line from the catalog
2. Reserve the whole cart (all-or-nothing)
3. Create the order PENDING/PENDING (release the reservation if this fails)
4. Record the payment reference -> order mapping BEFORE calling the provider
5. Initialize the payment outside any transaction
6. On initialization failure: release stock, mark order and payment FAILED

Settlement (webhook or callback) verifies with the provider outside any
transaction and then drives exactly one order transition. Duplicate or
concurrent completions observe IllegalTransition and report ALREADY_SETTLED.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from storefront.core.exceptions import (
    IllegalTransition,
    InvalidCart,
    InvalidSignature,
    OrderNotFound,
    PaymentError,
    PaymentInitializationFailed,
    PaymentVerificationFailed,
    ProductNotFound,
    UnsupportedProvider,
)
from storefront.models import (
    ACTIVE_PAYMENT_STATUSES,
    OrderStatus,
    PaymentProvider,
    PaymentRecordStatus,
    PaymentStatus,
)
from storefront.modules.payments import GatewayRegistry, WebhookEvent, WebhookEventKind, parse_provider
from storefront.repositories import OrderLine, OrderRecord, PaymentRecord, Store
from storefront.services.alerting import alert_amount_mismatch, alert_late_payment, alert_refund_failure
from storefront.services.catalog import Catalog
from storefront.services.dispatch import TaskDispatcher
from storefront.services.inventory_ledger import InventoryLedger
from storefront.services.order_state_machine import CANCELLABLE_AFTER_PAYMENT, OrderStateMachine
from storefront.services.webhook_dedup import WebhookDeduplicator

logger = logging.getLogger(__name__)

CARD_PAYMENT_METHOD = "card"
OFFLINE_PAYMENT_METHODS = frozenset({"bank_transfer", "cash_on_delivery"})

MAX_LINE_QUANTITY = 1000


class SettlementOutcome(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"


class WebhookOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE_WEBHOOK = "DUPLICATE_WEBHOOK"
    IGNORED = "IGNORED"


@dataclass
class CartItem:
    product_id: int
    quantity: int


@dataclass
class CheckoutResult:
    order_id: str
    order_number: str
    total: Decimal
    currency: str
    reference: Optional[str] = None
    redirect_url: Optional[str] = None


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    reference: Optional[str] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_order(cls, outcome: SettlementOutcome, reference: Optional[str], order: OrderRecord, **details):
        return cls(
            outcome=outcome,
            reference=reference,
            order_id=order.id,
            order_status=order.status.value,
            payment_status=order.payment_status.value,
            details=details,
        )


def generate_order_number() -> str:
    """Unique order number in format ORD-YYYYMMDD-XXXXXXXX."""
    return f"ORD-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


def generate_payment_reference() -> str:
    return f"PAY-{uuid.uuid4().hex.upper()}"


class CheckoutOrchestrator:

    def __init__(
        self,
        store: Store,
        ledger: InventoryLedger,
        orders: OrderStateMachine,
        gateways: GatewayRegistry,
        dedup: WebhookDeduplicator,
        catalog: Catalog,
        dispatcher: TaskDispatcher,
        currency: str = "NGN",
        default_provider: str = PaymentProvider.PAYSTACK.value,
        callback_url: str = "",
    ):
        self.store = store
        self.ledger = ledger
        self.orders = orders
        self.gateways = gateways
        self.dedup = dedup
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.currency = currency
        self.default_provider = default_provider
        self.callback_url = callback_url

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def checkout(
        self,
        user_id: str,
        cart_items: Iterable[Union[CartItem, Tuple[int, int]]],
        shipping_info: Optional[Dict[str, Any]] = None,
        billing_info: Optional[Dict[str, Any]] = None,
        payment_method: str = CARD_PAYMENT_METHOD,
    ) -> CheckoutResult:
        """
        Reserve stock, create the order and start payment.

        Raises:
            InvalidCart: empty cart, bad quantity, unknown payment method, no payer email
            ProductNotFound: a line references an unknown product
            InsufficientStock: any line cannot be reserved (nothing is held)
            PaymentInitializationFailed: provider refused; stock already released
        """
        start_time = time.time()
        payment_method = (payment_method or "").strip().lower()
        shipping_info = shipping_info or {}
        billing_info = billing_info or {}

        quantities = self._merge_cart(cart_items)
        provider = self._payment_provider(payment_method)
        gateway = None
        payer_email = None
        if provider is not None:
            try:
                gateway = self.gateways.get(provider)
            except UnsupportedProvider as e:
                raise InvalidCart(e.message, details=e.details) from e
            payer_email = billing_info.get("email") or shipping_info.get("email")
            if not payer_email:
                raise InvalidCart("An email address is required for online payment")

        lines = await self._price_lines(quantities)
        total = sum((line.line_total for line in lines), Decimal("0"))

        # Order id exists before the reservation so the sweeper can spot orphans
        order_id = str(uuid.uuid4())
        await self.ledger.reserve_all([(line.product_id, line.quantity) for line in lines], order_id)

        try:
            order = await self.orders.create(OrderRecord(
                id=order_id,
                order_number=generate_order_number(),
                user_id=user_id,
                lines=lines,
                total=total,
                currency=self.currency,
                payment_method=provider.value if provider else payment_method,
                shipping_info=shipping_info,
                billing_info=billing_info,
            ))
        except Exception:
            logger.error(f"Order creation failed for {order_id}; releasing reservation", exc_info=True)
            await self.ledger.release_order(order_id, reason="order creation failed")
            raise

        if gateway is None:
            self._log_metric("order_created_offline", order, start_time)
            return CheckoutResult(
                order_id=order.id,
                order_number=order.order_number,
                total=order.total,
                currency=order.currency,
            )

        reference = generate_payment_reference()
        try:
            async with self.store.transaction() as tx:
                payment = await tx.payments.add(PaymentRecord(
                    provider=provider.value,
                    order_id=order.id,
                    reference=reference,
                    amount=total,
                ))
                await tx.orders.set_payment_reference(order.id, reference)
        except Exception as e:
            logger.error(f"Could not record payment for order {order.id}: {e}")
            await self.orders.fail_initialization(order.id, "Payment record could not be created")
            raise PaymentInitializationFailed(
                "Payment could not be started, please retry",
                details={"order_id": order.id},
            ) from e

        try:
            init = await gateway.initialize(
                amount=total,
                payer_email=payer_email,
                reference=reference,
                callback_url=self.callback_url,
                metadata={"order_id": order.id, "order_number": order.order_number},
            )
        except Exception as e:
            message = e.message if isinstance(e, PaymentError) else str(e)
            logger.warning(f"Payment initialization failed for order {order.order_number}: {message}")
            await self.orders.fail_initialization(order.id, message)
            raise PaymentInitializationFailed(
                "Payment could not be started, please retry",
                details={"order_id": order.id, "provider": provider.value},
            ) from e

        async with self.store.transaction() as tx:
            await tx.payments.update(
                payment.id,
                ACTIVE_PAYMENT_STATUSES,
                status=PaymentRecordStatus.INITIALIZED,
                provider_reference=init.provider_reference,
            )

        self._log_metric("payment_initialized", order, start_time, provider=provider.value)
        return CheckoutResult(
            order_id=order.id,
            order_number=order.order_number,
            total=order.total,
            currency=order.currency,
            reference=reference,
            redirect_url=init.redirect_url,
        )

    def _merge_cart(self, cart_items) -> Dict[int, int]:
        quantities: Dict[int, int] = {}
        for item in cart_items or []:
            product_id, quantity = (item.product_id, item.quantity) if isinstance(item, CartItem) else item
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise InvalidCart(
                    f"Quantity for product {product_id} must be a positive integer",
                    details={"product_id": product_id, "quantity": quantity},
                )
            quantities[product_id] = quantities.get(product_id, 0) + quantity
            if quantities[product_id] > MAX_LINE_QUANTITY:
                raise InvalidCart(
                    f"Quantity for product {product_id} exceeds {MAX_LINE_QUANTITY}",
                    details={"product_id": product_id},
                )
        if not quantities:
            raise InvalidCart("No items in cart")
        return quantities

    def _payment_provider(self, payment_method: str) -> Optional[PaymentProvider]:
        """None for offline methods."""
        method = (payment_method or "").strip().lower()
        if method in OFFLINE_PAYMENT_METHODS:
            return None
        if method == CARD_PAYMENT_METHOD:
            method = self.default_provider
        try:
            return parse_provider(method)
        except UnsupportedProvider as e:
            raise InvalidCart(f"Unsupported payment method: {payment_method}", details=e.details) from e

    async def _price_lines(self, quantities: Dict[int, int]) -> List[OrderLine]:
        lines = []
        for product_id in sorted(quantities):
            product = await self.catalog.get_product(product_id)
            if product is None:
                raise ProductNotFound(
                    f"Product {product_id} not found",
                    details={"product_id": product_id},
                )
            lines.append(OrderLine(
                product_id=product.id,
                product_name=product.name,
                quantity=quantities[product_id],
                unit_price=Decimal(product.price),
            ))
        return lines

    def _log_metric(self, event: str, order: OrderRecord, start_time: float, **extra) -> None:
        duration_ms = (time.time() - start_time) * 1000
        extras = " ".join(f"{k}={v}" for k, v in extra.items())
        logger.info(
            f"CHECKOUT_METRIC: {event} "
            f"order={order.order_number} "
            f"user_id={order.user_id} "
            f"amount={order.total} "
            f"item_count={len(order.lines)} "
            f"{extras + ' ' if extras else ''}"
            f"duration_ms={duration_ms:.2f}"
        )

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    async def complete_payment(self, reference: str, provider: Optional[str] = None) -> SettlementResult:
        """
        Verify a payment with its provider and settle the order.

        Shared by webhooks and the callback/polling fallback. Safe to call
        any number of times for the same reference.

        Raises:
            PaymentVerificationFailed: provider unreachable; order stays PENDING
        """
        async with self.store.transaction() as tx:
            payment = await tx.payments.get_by_reference(reference) if reference else None
            order = await tx.orders.get(payment.order_id) if payment else None

        if payment is None or order is None:
            logger.warning(f"Payment completion for unknown reference {reference} ({provider}); acknowledging")
            return SettlementResult(outcome=SettlementOutcome.ORDER_NOT_FOUND, reference=reference)

        if provider and provider != payment.provider:
            logger.warning(
                f"Reference {reference} belongs to {payment.provider}, not {provider}; "
                f"verifying with {payment.provider}"
            )

        gateway = self.gateways.get(payment.provider)

        if order.payment_status != PaymentStatus.PENDING:
            if order.payment_status == PaymentStatus.FAILED:
                await self._check_late_payment(gateway, order, payment.reference)
            return SettlementResult.for_order(SettlementOutcome.ALREADY_SETTLED, reference, order)

        result = await gateway.verify(payment.reference)

        if result.pending:
            logger.info(f"Payment {reference} for order {order.order_number} still pending at provider")
            return SettlementResult.for_order(SettlementOutcome.PENDING, reference, order)

        amount_ok = result.amount == order.total and (
            not result.currency or result.currency.upper() == order.currency.upper()
        )

        try:
            if result.success and amount_ok:
                settled = await self.orders.mark_paid(
                    order.id,
                    provider_transaction_id=result.provider_transaction_id,
                    amount=result.amount,
                    verification_response=result.raw_response,
                )
                return SettlementResult.for_order(SettlementOutcome.PAID, reference, settled)

            if result.success:
                logger.error(
                    f"Amount mismatch for order {order.order_number}: "
                    f"expected {order.total} {order.currency}, got {result.amount} {result.currency}"
                )
                await alert_amount_mismatch(order.id, reference, order.total, result.amount)
                reason = "Paid amount does not match order total"
            else:
                reason = result.message or "Payment was not successful"

            settled = await self.orders.mark_payment_failed(order.id, reason)
            return SettlementResult.for_order(SettlementOutcome.FAILED, reference, settled, reason=reason)

        except IllegalTransition:
            current = await self.orders.get(order.id)
            if result.success and current.payment_status == PaymentStatus.FAILED:
                await self._report_late_payment(current, reference)
            return SettlementResult.for_order(SettlementOutcome.ALREADY_SETTLED, reference, current)

    async def _check_late_payment(self, gateway, order: OrderRecord, reference: str) -> None:
        """A payment that succeeded after its order expired or was cancelled needs a manual refund."""
        try:
            result = await gateway.verify(reference)
        except PaymentVerificationFailed as e:
            logger.warning(f"Could not re-verify {reference} for settled order {order.order_number}: {e.message}")
            return
        if result.success:
            await self._report_late_payment(order, reference)

    async def _report_late_payment(self, order: OrderRecord, reference: str) -> None:
        logger.error(f"Payment {reference} succeeded for {order.status.value} order {order.order_number}")
        await alert_late_payment(order.id, reference, order.status.value)

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def handle_webhook(
        self,
        provider_key: str,
        payload: bytes,
        signature: Optional[str],
        native: bool = False,
    ) -> WebhookOutcome:
        """
        Authenticate, dedup and hand off a provider webhook.

        `native` marks a signature taken from the provider's own header
        rather than x-webhook-signature.

        Raises:
            UnsupportedProvider: unknown provider key
            InvalidSignature: signature missing or wrong (never processed)
            ValueError: malformed body
        """
        provider = parse_provider(provider_key)
        gateway = self.gateways.get(provider)

        check = gateway.verify_native_signature if native else gateway.verify_signature
        if not check(payload, signature):
            logger.warning(f"SECURITY: invalid {provider.value} webhook signature rejected")
            raise InvalidSignature(
                f"Invalid {provider.value} webhook signature",
                details={"provider": provider.value},
            )

        event = gateway.parse_webhook(payload)
        if event.kind == WebhookEventKind.IGNORED:
            logger.debug(f"Ignoring {provider.value} webhook event {event.event_type}")
            return WebhookOutcome.IGNORED

        if not await self.dedup.admit(provider.value, event.event_id):
            return WebhookOutcome.DUPLICATE_WEBHOOK

        try:
            await self.dispatcher.enqueue(
                "process_payment_webhook",
                provider=provider.value,
                event=event.to_dict(),
            )
        except Exception:
            logger.error(f"Could not queue webhook {provider.value}:{event.event_id}", exc_info=True)
            await self.dedup.forget(provider.value, event.event_id)
            raise

        logger.info(f"Webhook {provider.value}:{event.event_id} ({event.kind.value}) accepted")
        return WebhookOutcome.ACCEPTED

    async def process_webhook_event(
        self,
        provider: str,
        event: Union[WebhookEvent, Dict[str, Any]],
    ) -> SettlementResult:
        if isinstance(event, dict):
            event = WebhookEvent.from_dict(event)

        if event.kind in (WebhookEventKind.PAYMENT_SUCCEEDED, WebhookEventKind.PAYMENT_FAILED):
            return await self.complete_payment(event.reference, provider)

        if event.kind == WebhookEventKind.REFUND_PROCESSED:
            return await self._apply_refund_webhook(provider, event)

        return SettlementResult(outcome=SettlementOutcome.ALREADY_SETTLED, reference=event.reference)

    async def _apply_refund_webhook(self, provider: str, event: WebhookEvent) -> SettlementResult:
        """
        Only refunds we have not recorded yet are applied here: those queued
        by a cancellation (CANCELLED with payment still SUCCESSFUL). Refunds
        issued synchronously were recorded when they were issued.
        """
        order = await self.orders.find_by_reference(event.reference) if event.reference else None
        if order is None:
            logger.warning(f"Refund webhook for unknown reference {event.reference} ({provider})")
            return SettlementResult(outcome=SettlementOutcome.ORDER_NOT_FOUND, reference=event.reference)

        if order.status != OrderStatus.CANCELLED or order.payment_status != PaymentStatus.SUCCESSFUL:
            return SettlementResult.for_order(SettlementOutcome.ALREADY_SETTLED, event.reference, order)

        try:
            refunded = await self.orders.mark_refunded(order.id)
        except IllegalTransition:
            return SettlementResult.for_order(
                SettlementOutcome.ALREADY_SETTLED, event.reference, await self.orders.get(order.id)
            )
        return SettlementResult.for_order(SettlementOutcome.REFUNDED, event.reference, refunded)

    # =========================================================================
    # CANCELLATION & REFUNDS
    # =========================================================================

    async def cancel_order(self, order_id: str, reason: str, user_id: Optional[str] = None) -> OrderRecord:
        """
        Cancel before payment directly; after payment refund first (outside
        any transaction) and fall back to a queued refund if the provider
        call fails.
        """
        order = await self.orders.get(order_id)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})

        if order.payment_status == PaymentStatus.PENDING:
            return await self.orders.cancel(order_id, reason)

        if order.payment_status != PaymentStatus.SUCCESSFUL or order.status not in CANCELLABLE_AFTER_PAYMENT:
            raise IllegalTransition(
                f"Order {order.order_number} cannot be cancelled in state "
                f"{order.status.value}/{order.payment_status.value}",
                order_id=order_id,
                current_status=order.status.value,
                current_payment_status=order.payment_status.value,
                attempted="cancel",
            )

        payment = await self._settled_payment(order_id)
        try:
            if payment is None:
                raise UnsupportedProvider(
                    f"Order {order.order_number} was paid offline; refund must be issued manually",
                    details={"order_id": order_id},
                )
            await self._issue_refund(payment, None)
        except PaymentError as e:
            logger.warning(f"Refund for cancelled order {order.order_number} failed: {e.message}")
            await alert_refund_failure(order_id, payment.reference if payment else None, e.message, queued=True)
            await self.dispatcher.enqueue("process_queued_refund", order_id=order_id)
            return await self.orders.cancel(order_id, reason, refund_queued=True)

        return await self.orders.cancel(order_id, reason, refunded=True)

    async def refund_order(self, order_id: str, amount: Optional[Decimal] = None) -> OrderRecord:
        """Admin refund without cancelling. Partial when `amount` is less than what remains."""
        order = await self.orders.get(order_id)
        payment = await self._settled_payment(order_id)
        if order.payment_status != PaymentStatus.SUCCESSFUL or payment is None:
            raise IllegalTransition(
                f"Order {order.order_number} has no settled provider payment to refund",
                order_id=order_id,
                current_status=order.status.value,
                current_payment_status=order.payment_status.value,
                attempted="refund",
            )

        remaining = order.total - payment.refunded_amount
        refund = Decimal(amount) if amount is not None else remaining
        if refund <= 0 or refund > remaining:
            raise IllegalTransition(
                f"Refund of {refund} invalid for order {order.order_number} ({remaining} refundable)",
                order_id=order_id,
                attempted="refund",
            )

        await self._issue_refund(payment, refund)
        return await self.orders.mark_refunded(order_id, refund)

    async def process_queued_refund(self, order_id: str) -> Optional[OrderRecord]:
        """Retry a refund queued by cancel_order. Raises on provider failure so the job retries."""
        order = await self.orders.get(order_id)
        if order.payment_status != PaymentStatus.SUCCESSFUL:
            logger.info(f"Queued refund for order {order.order_number} already settled ({order.payment_status.value})")
            return None

        payment = await self._settled_payment(order_id)
        if payment is None:
            await alert_refund_failure(order_id, None, "No provider payment on record", queued=False)
            return None

        remaining = order.total - payment.refunded_amount
        await self._issue_refund(payment, remaining if payment.refunded_amount else None)
        return await self.orders.mark_refunded(order_id)

    async def confirm_offline_payment(self, order_id: str) -> OrderRecord:
        """Admin confirmation that a bank transfer / cash on delivery was received."""
        order = await self.orders.get(order_id)
        if order.payment_method not in OFFLINE_PAYMENT_METHODS:
            raise IllegalTransition(
                f"Order {order.order_number} is paid through {order.payment_method}, not offline",
                order_id=order_id,
                current_status=order.status.value,
                current_payment_status=order.payment_status.value,
                attempted="confirm_offline_payment",
            )
        return await self.orders.mark_paid(order_id, provider_transaction_id=f"offline:{order.payment_method}")

    async def _settled_payment(self, order_id: str) -> Optional[PaymentRecord]:
        async with self.store.transaction() as tx:
            return await tx.payments.get_settled_for_order(order_id)

    async def _issue_refund(self, payment: PaymentRecord, amount: Optional[Decimal]) -> None:
        gateway = self.gateways.get(payment.provider)
        target = payment.provider_transaction_id or payment.provider_reference or payment.reference
        result = await gateway.refund(target, amount)
        logger.info(
            f"Refund issued for payment {payment.reference} "
            f"({result.amount if result.amount is not None else 'full'})"
        )
