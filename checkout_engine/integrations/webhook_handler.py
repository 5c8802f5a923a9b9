"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification over the raw body
- Translation of PaymentIntent events into payment outcomes
- Event deduplication using Redis (a fast path; the reconciler is
  idempotent on its own)
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from checkout_engine.core.reconciler import Reconciler
from checkout_engine.domain.errors import InvalidRequest, InvalidSignature
from checkout_engine.domain.models import PaymentOutcome, PaymentOutcomeEvent

logger = structlog.get_logger(__name__)

# Stripe event type → outcome; every other type is acknowledged and ignored
EVENT_OUTCOMES: Dict[str, PaymentOutcome] = {
    "payment_intent.succeeded": PaymentOutcome.CAPTURED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "payment_intent.canceled": PaymentOutcome.FAILED,
}


def _field(obj: Any, name: str) -> Any:
    try:
        return obj[name]
    except (KeyError, TypeError):
        return None


class WebhookHandler:
    """
    Handles Stripe webhook events.

    Features:
    - Signature verification using the Stripe webhook secret
    - Event deduplication (processed webhook ids kept in Redis)
    - Routing of PaymentIntent outcomes to the reconciler
    """

    def __init__(
        self,
        reconciler: Reconciler,
        redis_client: aioredis.Redis,
        webhook_secret: str,
        dedup_ttl_seconds: int = 86400 * 7,
    ):
        """
        Initialize webhook handler.

        Args:
            reconciler: Applies payment outcomes
            redis_client: Redis client for event deduplication
            webhook_secret: Stripe webhook signing secret
            dedup_ttl_seconds: How long processed event ids are remembered
        """
        self.reconciler = reconciler
        self.redis_client = redis_client
        self.webhook_secret = webhook_secret
        self.dedup_ttl_seconds = dedup_ttl_seconds

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            InvalidSignature: If signature verification fails
            InvalidRequest: If the payload is not a valid event
        """
        if not signature:
            logger.error("webhook_signature_missing")
            raise InvalidSignature("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise InvalidSignature(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise InvalidRequest(f"Invalid webhook payload: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event["id"],
            event_type=event["type"],
        )
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            return bool(await self.redis_client.exists(f"webhook:processed:{event_id}"))
        except Exception as e:
            # If Redis is down, process the event anyway; the reconciler is idempotent
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """Remember a processed event id for the dedup window."""
        try:
            await self.redis_client.setex(
                f"webhook:processed:{event_id}", self.dedup_ttl_seconds, "1"
            )
            logger.info("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    @staticmethod
    def to_outcome_event(event: stripe.Event) -> Optional[PaymentOutcomeEvent]:
        """
        Translate a Stripe event into a payment outcome.

        Returns:
            Optional[PaymentOutcomeEvent]: None for event types the checkout
                does not act on
        """
        outcome = EVENT_OUTCOMES.get(event["type"])
        if outcome is None:
            return None

        intent = event["data"]["object"]
        amount = _field(intent, "amount_received") if outcome == PaymentOutcome.CAPTURED else None
        error = _field(intent, "last_payment_error")
        method_types = _field(intent, "payment_method_types") or []

        error_message = None
        if error:
            error_message = _field(error, "message")
        elif event["type"] == "payment_intent.canceled":
            error_message = "payment intent canceled"

        return PaymentOutcomeEvent(
            reference=intent["id"],
            outcome=outcome,
            amount_cents=int(amount) if amount else None,
            method=method_types[0] if method_types else None,
            event_id=event["id"],
            source="webhook",
            error_message=error_message,
        )

    async def handle(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and process a webhook delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Processing result with ``status`` one of
                applied, duplicate, unknown_reference, ignored
        """
        event = self.verify_signature(payload, signature)
        event_id = event["id"]
        event_type = event["type"]

        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        if await self.is_event_processed(event_id):
            logger.info(
                "webhook_event_already_processed", event_id=event_id, event_type=event_type
            )
            return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

        outcome_event = self.to_outcome_event(event)
        if outcome_event is None:
            await self.mark_event_processed(event_id)
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        result = await self.reconciler.apply(outcome_event)
        await self.mark_event_processed(event_id)

        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
            result=result.value,
        )
        return {"status": result.value, "event_id": event_id, "event_type": event_type}
