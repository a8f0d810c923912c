"""
Alerting Service for settlement anomalies

Provides PagerDuty integration for conditions that need a human:
- Inventory bookkeeping that no longer adds up
- Payments that arrive for orders already failed or cancelled
- Amount mismatches between the order and the provider
- Reservations the sweeper keeps failing to resolve
- Refunds that could not be issued or queued
- Products whose available stock drops to their low-stock threshold

Alerting never raises into the caller: a failure to page falls back to
critical log lines.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from storefront.core.config import settings

logger = logging.getLogger(__name__)

PAGERDUTY_EVENTS_API = "https://events.pagerduty.com/v2/enqueue"

SEVERITY_MAPPING = {
    "critical": "critical",
    "high": "error",
    "warning": "warning",
    "info": "info",
}


async def send_alert(
    severity: str,
    summary: str,
    details: Optional[Dict[str, Any]] = None,
    component: str = "settlement",
    dedup_key: Optional[str] = None,
) -> bool:
    """
    Send an alert to PagerDuty.

    Returns True if the alert was accepted (or logged in dry-run mode).
    """
    pd_severity = SEVERITY_MAPPING.get(severity.lower(), "warning")

    if not settings.PAGERDUTY_ENABLED:
        logger.warning(f"Alert [{pd_severity}]: {summary} {json.dumps(details or {}, default=str)}")
        return False

    payload = {
        "routing_key": settings.PAGERDUTY_ROUTING_KEY,
        "event_action": "trigger",
        "payload": {
            "summary": summary[:1024],  # PagerDuty limit
            "severity": pd_severity,
            "source": settings.APP_NAME.lower(),
            "component": component,
            "group": "settlement",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "custom_details": details or {},
        },
    }
    if dedup_key:
        payload["dedup_key"] = dedup_key

    if settings.ALERT_DRY_RUN:
        logger.info(f"[DRY RUN] PagerDuty alert: {summary} (severity: {pd_severity})")
        return True

    if not settings.PAGERDUTY_ROUTING_KEY:
        logger.warning(f"No PAGERDUTY_ROUTING_KEY set, logging alert only: {summary}")
        return False

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                PAGERDUTY_EVENTS_API,
                content=json.dumps(payload, default=str),
                headers={"Content-Type": "application/json"},
            )
        if response.status_code == 202:
            logger.info(f"PagerDuty alert sent: {summary}")
            return True
        logger.error(f"PagerDuty API error: {response.status_code} - {response.text}")
        return False
    except Exception as e:
        logger.error(f"Failed to send PagerDuty alert: {e}")
        logger.critical(f"[ALERT FAILED] {summary}")
        if details:
            logger.critical(f"[ALERT FAILED] Details: {json.dumps(details, default=str)}")
        return False


# Convenience functions for specific alert types


async def alert_invariant_violation(product_id: int, operation: str, details: Dict[str, Any]) -> bool:
    return await send_alert(
        severity="critical",
        summary=f"[INVENTORY] Invariant violation on product {product_id} during {operation}",
        details={"product_id": product_id, "operation": operation, **details},
        component="inventory-ledger",
        dedup_key=f"inventory-invariant-{product_id}",
    )


async def alert_late_payment(order_id: str, reference: str, order_status: str) -> bool:
    """Money was taken for an order that can no longer be fulfilled."""
    return await send_alert(
        severity="critical",
        summary=f"[PAYMENT] Successful payment for {order_status} order {order_id}",
        details={
            "order_id": order_id,
            "reference": reference,
            "order_status": order_status,
            "action": "Refund manually or reinstate the order",
        },
        component="payments",
        dedup_key=f"late-payment-{reference}",
    )


async def alert_amount_mismatch(
    order_id: str,
    reference: str,
    expected: Decimal,
    received: Decimal,
) -> bool:
    return await send_alert(
        severity="high",
        summary=f"[PAYMENT] Amount mismatch on order {order_id}: expected {expected}, got {received}",
        details={
            "order_id": order_id,
            "reference": reference,
            "expected": str(expected),
            "received": str(received),
        },
        component="payments",
        dedup_key=f"amount-mismatch-{reference}",
    )


async def alert_refund_failure(order_id: str, reference: Optional[str], error: str, queued: bool) -> bool:
    return await send_alert(
        severity="high" if queued else "critical",
        summary=f"[REFUND] Refund for order {order_id} failed" + (" (queued for retry)" if queued else ""),
        details={
            "order_id": order_id,
            "reference": reference,
            "error": error[:500],
            "queued": queued,
        },
        component="refunds",
        dedup_key=f"refund-failure-{order_id}",
    )


async def alert_stuck_reservation(reservation_id: int, order_id: str, attempts: int, error: str) -> bool:
    return await send_alert(
        severity="high",
        summary=f"[SWEEPER] Reservation {reservation_id} for order {order_id} unresolved after {attempts} sweeps",
        details={
            "reservation_id": reservation_id,
            "order_id": order_id,
            "attempts": attempts,
            "error": error[:500],
        },
        component="reservation-sweeper",
        dedup_key=f"stuck-reservation-{reservation_id}",
    )


async def alert_low_stock(product_id: int, available: int, threshold: int) -> bool:
    return await send_alert(
        severity="warning",
        summary=f"[INVENTORY] Product {product_id} is running low ({available} units remaining)",
        details={
            "product_id": product_id,
            "available_quantity": available,
            "low_stock_threshold": threshold,
        },
        component="inventory-ledger",
        dedup_key=f"low-stock-{product_id}",
    )
