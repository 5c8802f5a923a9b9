"""
Checkout error hierarchy.

Every error carries the HTTP status code and the stable error name the API
layer puts in the response body, so routes map failures without knowing
which component raised them.
"""
from typing import Any


class CheckoutError(Exception):
    """Base class for all checkout failures."""

    status_code: int = 500
    error_name: str = "CheckoutError"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.error_name)
        self.message = message or self.error_name
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Render the error as an API response body."""
        return {"success": False, "error": self.error_name, "message": self.message}


class InvalidRequest(CheckoutError):
    """Malformed or incomplete input."""

    status_code = 400
    error_name = "InvalidRequest"


class InvalidQuantity(InvalidRequest):
    """Quantity is not a positive integer or exceeds the current hold."""

    error_name = "InvalidQuantity"


class ProductNotFound(CheckoutError):
    status_code = 404
    error_name = "ProductNotFound"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class OrderNotFound(CheckoutError):
    status_code = 404
    error_name = "OrderNotFound"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", order_id=order_id)
        self.order_id = order_id


class InsufficientStock(CheckoutError):
    """Requested quantity exceeds what is available."""

    status_code = 409
    error_name = "InsufficientStock"

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Only {max(available, 0)} left in stock for {product_id}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StockConflict(CheckoutError):
    """The conditional decrement lost a race with a concurrent order."""

    status_code = 409
    error_name = "StockConflict"

    def __init__(self, product_id: str, requested: int):
        super().__init__(
            f"Stock for {product_id} changed during checkout",
            product_id=product_id,
            requested=requested,
        )
        self.product_id = product_id
        self.requested = requested


class PaymentError(CheckoutError):
    """Base class for payment provider failures."""

    status_code = 502
    error_name = "PaymentError"


class PaymentRequestTimeout(PaymentError):
    """No reply from the payment service within the deadline."""

    status_code = 504
    error_name = "PaymentRequestTimeout"


class PaymentProviderError(PaymentError):
    """The payment provider refused or failed the request."""

    error_name = "PaymentProviderError"


class InvalidSignature(CheckoutError):
    """Webhook payload failed signature verification."""

    status_code = 400
    error_name = "InvalidSignature"


class StoreUnavailable(CheckoutError):
    """Redis or the authoritative store could not be reached, or a lock was busy."""

    status_code = 503
    error_name = "StoreUnavailable"


class IllegalTransition(CheckoutError):
    """A status change not allowed by the state machine."""

    status_code = 409
    error_name = "IllegalTransition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"{entity} cannot move from {current} to {target}",
            entity=entity,
            current=current,
            target=target,
        )
        self.entity = entity
        self.current = current
        self.target = target


class AuthenticationRequired(CheckoutError):
    status_code = 401
    error_name = "AuthenticationRequired"


class PermissionDenied(CheckoutError):
    status_code = 403
    error_name = "PermissionDenied"
