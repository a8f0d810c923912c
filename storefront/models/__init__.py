from storefront.models.product import Product
from storefront.models.inventory_log import InventoryLog, InventoryLogKind
from storefront.models.stock_reservation import StockReservation, ReservationState
from storefront.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    VALID_STATUS_TRANSITIONS,
    VALID_PAYMENT_TRANSITIONS,
    FULFILMENT_STEPS,
    can_transition_status,
    can_transition_payment,
)
from storefront.models.payment import (
    Payment,
    PaymentProvider,
    PaymentRecordStatus,
    ACTIVE_PAYMENT_STATUSES,
)
