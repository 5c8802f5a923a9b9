"""
Stripe API client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient and rate-limit errors
- Circuit breaker pattern
- Idempotent PaymentIntent creation
- The Stripe flavour of the payment gateway bridge
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from checkout_engine.config import Settings, get_settings
from checkout_engine.domain.errors import PaymentProviderError
from checkout_engine.integrations.payment_gateway import (
    PaymentGateway,
    PaymentReference,
    PaymentRequest,
)
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    CIRCUIT_OPEN = "circuit_open"  # Don't retry, fail fast


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError("Circuit breaker is open", StripeErrorType.CIRCUIT_OPEN)

        try:
            result = func(*args, **kwargs)
        except stripe.CardError:
            # Declines are the customer's problem, not Stripe's health
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeClient:
    """
    Wrapper for the Stripe SDK.

    The SDK is blocking, so every call runs in a worker thread.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError) -> StripeError:
        """
        Classify a Stripe SDK error.

        Args:
            error: Stripe error

        Returns:
            StripeError: Classified error for the caller to raise
        """
        error_type = self._classify_error(error)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, func: Any) -> Any:
        try:
            return await asyncio.to_thread(self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            raise self._handle_stripe_error(e) from e

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Retries reuse the idempotency key, so Stripe never creates two
        intents for one receipt.

        Args:
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'usd')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                idempotency_key=idempotency_key,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
            )

        payment_intent = await self._call(_create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    async def ping(self) -> None:
        """Cheapest authenticated call, used by health checks."""
        await self._call(lambda: stripe.Balance.retrieve())


class StripePaymentGateway(PaymentGateway):
    """Payment gateway backed by Stripe PaymentIntents."""

    provider = "stripe"

    def __init__(self, client: StripeClient):
        self.client = client

    async def request_payment(self, request: PaymentRequest) -> PaymentReference:
        """
        Create a PaymentIntent for an order.

        Returns:
            PaymentReference: Intent id as reference, client secret as token

        Raises:
            PaymentProviderError: If Stripe rejects the request or stays
                unavailable after retries
        """
        started = time.perf_counter()
        try:
            intent = await self.client.create_payment_intent(
                amount_cents=request.amount_cents,
                currency=request.currency,
                idempotency_key=request.receipt,
                metadata={
                    "user_id": request.user_id,
                    "receipt": request.receipt,
                    "email": request.payer.email or "",
                },
            )
        except StripeError as e:
            metrics.record_payment_request(
                self.provider, "error", time.perf_counter() - started
            )
            raise PaymentProviderError(
                f"Stripe payment creation failed: {e}",
                error_type=e.error_type.value,
            ) from e

        metrics.record_payment_request(self.provider, "success", time.perf_counter() - started)
        return PaymentReference(
            reference=intent.id,
            amount_cents=intent.amount,
            status=intent.status,
            checkout_token=intent.client_secret,
            provider=self.provider,
        )

    async def check_health(self) -> Dict[str, Any]:
        await self.client.ping()
        return {
            "status": "healthy",
            "service": "stripe",
            "message": "Stripe API connection successful",
            "test_mode": self.client.settings.is_test_mode,
        }
