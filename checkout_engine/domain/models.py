"""
Checkout value objects.

Plain immutable records passed between the cart, order and reconciliation
components. Persistence models live in ``checkout_engine.database.models``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from checkout_engine.domain.errors import InvalidQuantity, InvalidRequest

# Identifiers end up inside Redis keys (hold:<product>:<cart>) and must parse back.
IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

DEFAULT_COUNTRY = "India"


def validate_identifier(value: Any, field_name: str) -> str:
    """
    Check a product or cart identifier.

    Raises:
        InvalidRequest: If the value is empty or contains characters
            outside ``[A-Za-z0-9_-]``
    """
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.fullmatch(value):
        raise InvalidRequest(f"{field_name} must match [A-Za-z0-9_-]+", field=field_name)
    return value


def validate_quantity(value: Any) -> int:
    """Quantities are positive integers; booleans are rejected even though they are ints."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidQuantity("Quantity must be a positive integer", quantity=value)
    return value


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class ShippingAddress:
    """Delivery address captured on the order."""

    street: str
    city: str
    state: str
    pincode: str
    country: str = DEFAULT_COUNTRY
    landmark: str | None = None

    REQUIRED_FIELDS = ("street", "city", "state", "pincode")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ShippingAddress:
        """
        Build an address from request data.

        Raises:
            InvalidRequest: If a required field is missing or blank
        """
        if not data:
            raise InvalidRequest("Shipping address is required")
        missing = [
            name for name in cls.REQUIRED_FIELDS if not str(data.get(name) or "").strip()
        ]
        if missing:
            raise InvalidRequest(
                f"Shipping address is missing: {', '.join(missing)}", missing=missing
            )
        return cls(
            street=str(data["street"]).strip(),
            city=str(data["city"]).strip(),
            state=str(data["state"]).strip(),
            pincode=str(data["pincode"]).strip(),
            country=str(data.get("country") or DEFAULT_COUNTRY).strip(),
            landmark=data.get("landmark") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            "country": self.country,
            "landmark": self.landmark,
        }


@dataclass(frozen=True)
class Payer:
    """Identity of the customer paying for an order, as forwarded by the gateway."""

    user_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class OrderReceipt:
    """What the client needs to complete payment for a freshly created order."""

    order_reference: str
    provider_checkout_token: str | None
    total_amount_cents: int
    currency: str


class PaymentOutcome(str, Enum):
    CAPTURED = "captured"
    FAILED = "failed"


class ReconcileResult(str, Enum):
    """What the reconciler did with a payment outcome event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_REFERENCE = "unknown_reference"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentOutcomeEvent:
    """
    Normalized payment verdict, whatever transport delivered it.

    Attributes:
        reference: Provider reference (the order id / payment intent id)
        outcome: captured or failed
        amount_cents: Captured amount, when the provider reports one
        method: Payment method reported by the provider
        event_id: Provider event id used for duplicate detection
        source: ``webhook`` or ``broker``
    """

    reference: str
    outcome: PaymentOutcome
    amount_cents: int | None = None
    method: str | None = None
    event_id: str | None = None
    source: str = "webhook"
    error_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)
