"""
Order and payment status state machines.

Order:
    pending → processing → shipped → delivered
       │          │
       │          ├→ cancelled
       │          └→ failed → failed_stock_rolledback
       ├→ failed
       ├→ cancelled
       └→ pending_stock_rolledback

Payment:
    created → captured
            → failed
"""
from enum import Enum

from checkout_engine.domain.errors import IllegalTransition


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"
    FAILED_STOCK_ROLLEDBACK = "failed_stock_rolledback"
    PENDING_STOCK_ROLLEDBACK = "pending_stock_rolledback"


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"


class PaidStatus(str, Enum):
    """How much of an order total has been captured."""

    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.PROCESSING,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
            OrderStatus.PENDING_STOCK_ROLLEDBACK,
        }
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.FAILED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.FAILED: frozenset({OrderStatus.FAILED_STOCK_ROLLEDBACK}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED_STOCK_ROLLEDBACK: frozenset(),
    OrderStatus.PENDING_STOCK_ROLLEDBACK: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.CAPTURED, PaymentStatus.FAILED}),
    PaymentStatus.CAPTURED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


def can_transition_order(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def ensure_order_transition(current: OrderStatus | str, target: OrderStatus | str) -> OrderStatus:
    """
    Validate an order status change.

    Args:
        current: Current order status
        target: Requested status

    Returns:
        OrderStatus: The target status

    Raises:
        IllegalTransition: If the table does not allow the change
    """
    if not can_transition_order(current, target):
        raise IllegalTransition("Order", OrderStatus(current).value, OrderStatus(target).value)
    return OrderStatus(target)


def can_transition_payment(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def ensure_payment_transition(
    current: PaymentStatus | str, target: PaymentStatus | str
) -> PaymentStatus:
    """Validate a payment status change, raising IllegalTransition if not allowed."""
    if not can_transition_payment(current, target):
        raise IllegalTransition(
            "Payment", PaymentStatus(current).value, PaymentStatus(target).value
        )
    return PaymentStatus(target)


def is_terminal_order_status(status: OrderStatus | str) -> bool:
    return not ORDER_TRANSITIONS[OrderStatus(status)]


def order_statuses_leading_to(target: OrderStatus) -> list[OrderStatus]:
    """Every status from which ``target`` may be reached directly."""
    return [source for source, allowed in ORDER_TRANSITIONS.items() if target in allowed]


def compute_paid_status(total_cents: int, captured_cents: int) -> PaidStatus:
    """Compare captured money against the order total."""
    if captured_cents <= 0:
        return PaidStatus.UNPAID
    if captured_cents < total_cents:
        return PaidStatus.PARTIALLY_PAID
    return PaidStatus.PAID
