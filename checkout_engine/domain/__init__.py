"""Checkout domain: errors, status state machines and value objects."""
from checkout_engine.domain.errors import (
    AuthenticationRequired,
    CheckoutError,
    IllegalTransition,
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    InvalidSignature,
    OrderNotFound,
    PaymentError,
    PaymentProviderError,
    PaymentRequestTimeout,
    PermissionDenied,
    ProductNotFound,
    StockConflict,
    StoreUnavailable,
)
from checkout_engine.domain.models import (
    OrderItem,
    OrderReceipt,
    Payer,
    PaymentOutcome,
    PaymentOutcomeEvent,
    ReconcileResult,
    ShippingAddress,
)
from checkout_engine.domain.status import OrderStatus, PaidStatus, PaymentStatus

__all__ = [
    "AuthenticationRequired",
    "CheckoutError",
    "IllegalTransition",
    "InsufficientStock",
    "InvalidQuantity",
    "InvalidRequest",
    "InvalidSignature",
    "OrderItem",
    "OrderNotFound",
    "OrderReceipt",
    "OrderStatus",
    "PaidStatus",
    "Payer",
    "PaymentError",
    "PaymentOutcome",
    "PaymentOutcomeEvent",
    "PaymentProviderError",
    "PaymentRequestTimeout",
    "PaymentStatus",
    "PermissionDenied",
    "ProductNotFound",
    "ReconcileResult",
    "ShippingAddress",
    "StockConflict",
    "StoreUnavailable",
]
