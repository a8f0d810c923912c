"""
Storefront Exception Hierarchy

Structured exception classes for the settlement core. All exceptions carry
code, message, details and severity for audit trail and debugging.

Exception Hierarchy:
    StorefrontError
    ├── InventoryError
    │   ├── InsufficientStock
    │   └── InvariantViolation
    ├── OrderError
    │   ├── IllegalTransition
    │   ├── OrderNotFound
    │   ├── InvalidCart
    │   └── ProductNotFound
    └── PaymentError
        ├── PaymentInitializationFailed
        ├── PaymentVerificationFailed
        ├── PaymentRefundFailed
        ├── PaymentProviderError
        ├── InvalidSignature
        └── UnsupportedProvider
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """
    Base exception for all storefront custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "STOREFRONT_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# INVENTORY ERRORS
# =============================================================================

class InventoryError(StorefrontError):
    """Base exception for inventory-related errors."""
    default_code = "INVENTORY_ERROR"
    default_severity = "P1"


class InsufficientStock(InventoryError):
    """Not enough available stock to reserve."""
    default_code = "INSUFFICIENT_STOCK"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        product_id: Optional[int] = None,
        requested_qty: Optional[int] = None,
        available_qty: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "product_id": product_id,
            "requested_qty": requested_qty,
            "available_qty": available_qty,
        })
        self.product_id = product_id
        super().__init__(message, details=details, **kwargs)


class InvariantViolation(InventoryError):
    """
    Internal bookkeeping no longer adds up (e.g. committing more than is reserved).

    Indicates a bug elsewhere. Never auto-repaired.
    """
    default_code = "INVARIANT_VIOLATION"
    default_severity = "P0"


# =============================================================================
# ORDER ERRORS
# =============================================================================

class OrderError(StorefrontError):
    """Base exception for order lifecycle errors."""
    default_code = "ORDER_ERROR"
    default_severity = "P2"


class IllegalTransition(OrderError):
    """Transition not allowed from the order's current state."""
    default_code = "ILLEGAL_TRANSITION"

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        current_status: Optional[str] = None,
        current_payment_status: Optional[str] = None,
        attempted: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "current_status": current_status,
            "current_payment_status": current_payment_status,
            "attempted": attempted,
        })
        super().__init__(message, details=details, **kwargs)


class OrderNotFound(OrderError):
    """Order does not exist."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"


class InvalidCart(OrderError):
    """Cart failed validation (empty, bad quantities)."""
    default_code = "INVALID_CART"
    default_severity = "P3"


class ProductNotFound(OrderError):
    """Cart references a product the catalog does not know."""
    default_code = "PRODUCT_NOT_FOUND"
    default_severity = "P3"


# =============================================================================
# PAYMENT ERRORS
# =============================================================================

class PaymentError(StorefrontError):
    """Base exception for payment processing errors."""
    default_code = "PAYMENT_ERROR"
    default_severity = "P0"


class PaymentInitializationFailed(PaymentError):
    """Provider could not start the payment."""
    default_code = "PAYMENT_INITIALIZATION_FAILED"
    default_severity = "P1"


class PaymentVerificationFailed(PaymentError):
    """Provider verification could not be completed."""
    default_code = "PAYMENT_VERIFICATION_FAILED"
    default_severity = "P1"


class PaymentRefundFailed(PaymentError):
    """Refund failed."""
    default_code = "PAYMENT_REFUND_FAILED"
    default_severity = "P1"


class PaymentProviderError(PaymentError):
    """Provider returned an error or an unusable response."""
    default_code = "PAYMENT_PROVIDER_ERROR"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "provider": provider,
            "status_code": status_code,
        })
        super().__init__(message, details=details, **kwargs)


class InvalidSignature(PaymentError):
    """Webhook signature did not match. Logged for security monitoring."""
    default_code = "INVALID_SIGNATURE"
    default_severity = "P1"


class UnsupportedProvider(PaymentError):
    """No gateway registered (or configured) for the provider key."""
    default_code = "UNSUPPORTED_PROVIDER"
    default_severity = "P2"
