"""Tests for the Stripe client, its circuit breaker and the Stripe gateway."""
from types import SimpleNamespace
from typing import Any

import pytest
import stripe

from checkout_engine.config import Settings
from checkout_engine.domain.errors import PaymentProviderError
from checkout_engine.domain.models import Payer
from checkout_engine.integrations.payment_gateway import PaymentRequest
from checkout_engine.integrations.stripe_client import (
    CircuitBreaker,
    StripeClient,
    StripeError,
    StripeErrorType,
    StripePaymentGateway,
)


@pytest.fixture
def stripe_client(test_settings: Settings) -> StripeClient:
    return StripeClient(test_settings)


@pytest.fixture
def payment_request() -> PaymentRequest:
    return PaymentRequest(
        user_id="user-1",
        amount_cents=1250,
        currency="usd",
        payer=Payer(user_id="user-1", email="asha@example.com"),
        receipt="receipt_abc",
    )


class TestCircuitBreaker:
    @pytest.mark.unit
    def test_opens_after_threshold_and_fails_fast(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        def boom() -> None:
            raise stripe.APIConnectionError("network down")

        for _ in range(2):
            with pytest.raises(stripe.APIConnectionError):
                breaker.call(boom)

        assert breaker.state == "open"
        with pytest.raises(StripeError) as exc_info:
            breaker.call(lambda: "never called")
        assert exc_info.value.error_type == StripeErrorType.CIRCUIT_OPEN

    @pytest.mark.unit
    def test_card_declines_do_not_count_as_failures(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1)

        def decline() -> None:
            raise stripe.CardError("Your card was declined.", "card", "card_declined")

        with pytest.raises(stripe.CardError):
            breaker.call(decline)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    @pytest.mark.unit
    def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)

        def boom() -> None:
            raise RuntimeError("stripe unreachable")

        with pytest.raises(RuntimeError):
            breaker.call(boom)
        breaker.last_failure_time -= 1

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        breaker.call(lambda: "ok")
        assert breaker.state == "closed"


class TestErrorClassification:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error, expected",
        [
            (stripe.RateLimitError("slow down"), StripeErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("reset"), StripeErrorType.TRANSIENT),
            (stripe.APIError("500"), StripeErrorType.TRANSIENT),
            (stripe.CardError("declined", "card", "card_declined"), StripeErrorType.PERMANENT),
            (stripe.InvalidRequestError("bad amount", "amount"), StripeErrorType.PERMANENT),
            (stripe.AuthenticationError("bad key"), StripeErrorType.PERMANENT),
        ],
    )
    def test_classify(self, error: Any, expected: StripeErrorType) -> None:
        assert StripeClient._classify_error(error) == expected


class TestStripePaymentGateway:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_intent_becomes_payment_reference(
        self, stripe_client: StripeClient, payment_request: PaymentRequest, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            return_value=SimpleNamespace(
                id="pi_123",
                amount=1250,
                status="requires_payment_method",
                client_secret="pi_123_secret_abc",
            ),
        )

        reference = await StripePaymentGateway(stripe_client).request_payment(payment_request)

        assert reference.reference == "pi_123"
        assert reference.checkout_token == "pi_123_secret_abc"
        assert reference.provider == "stripe"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 1250
        assert kwargs["currency"] == "usd"
        assert kwargs["idempotency_key"] == "receipt_abc"
        assert kwargs["metadata"]["user_id"] == "user-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(
        self, stripe_client: StripeClient, payment_request: PaymentRequest, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.InvalidRequestError("Amount must be at least 50 cents", "amount"),
        )

        with pytest.raises(PaymentProviderError) as exc_info:
            await StripePaymentGateway(stripe_client).request_payment(payment_request)

        assert create.call_count == 1
        assert exc_info.value.context["error_type"] == "permanent"
