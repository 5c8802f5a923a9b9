"""
Payment gateway bridge.

A deployment talks to exactly one payment provider, chosen by
``PAYMENT_BACKEND``: Stripe directly, or a sibling payment service reached
over RabbitMQ request/reply.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from checkout_engine.domain.models import Payer


def generate_receipt() -> str:
    """Receipt number sent with a payment request; doubles as the idempotency key."""
    return f"receipt_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class PaymentRequest:
    user_id: str
    amount_cents: int
    currency: str
    payer: Payer
    receipt: str

    def to_message(self) -> Dict[str, Any]:
        """JSON body understood by the payment service."""
        return {
            "userId": self.user_id,
            "amount": self.amount_cents,
            "currency": self.currency,
            "receipt": self.receipt,
            "email": self.payer.email,
            "firstName": self.payer.first_name,
            "lastName": self.payer.last_name,
        }


@dataclass(frozen=True)
class PaymentReference:
    """
    Provider-side handle of a payment.

    Attributes:
        reference: Provider reference, used as the order id
        amount_cents: Amount the provider registered
        status: Provider status string
        checkout_token: What the client needs to complete payment
            (Stripe client secret or the payment service's public key)
        provider: ``stripe`` or ``broker``
    """

    reference: str
    amount_cents: int
    status: str
    checkout_token: Optional[str]
    provider: str


class PaymentGateway(ABC):
    """Creates provider payments for orders."""

    provider: str = ""

    @abstractmethod
    async def request_payment(self, request: PaymentRequest) -> PaymentReference:
        """
        Register a payment with the provider.

        Raises:
            PaymentRequestTimeout: If the provider did not answer in time
            PaymentProviderError: If the provider refused or failed
        """

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        """Probe provider reachability for readiness checks."""
