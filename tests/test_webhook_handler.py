"""Tests for Stripe webhook verification, deduplication and routing."""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

import pytest

from checkout_engine.domain.errors import InvalidRequest, InvalidSignature
from checkout_engine.domain.models import OrderItem, Payer, PaymentOutcome
from checkout_engine.domain.status import OrderStatus
from checkout_engine.integrations.webhook_handler import WebhookHandler
from checkout_engine.services import Services

WEBHOOK_SECRET = "whsec_test_fake_secret"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def intent_event(
    event_type: str, intent_id: str, event_id: str = "evt_1", **intent: Any
) -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": intent_id, "object": "payment_intent", **intent}},
        }
    )


async def place_order(services: Services, address: Dict[str, Any]) -> str:
    receipt = await services.orchestrator.create_order(
        payer=Payer(user_id="user-1"),
        items=[OrderItem("sku-oil", 2)],
        shipping_address=address,
    )
    return receipt.order_reference


class TestSignatureVerification:
    @pytest.mark.unit
    def test_valid_signature_yields_event(self, seeded: Services) -> None:
        payload = intent_event("payment_intent.succeeded", "pi_1")

        event = seeded.webhooks.verify_signature(payload.encode(), sign(payload))

        assert event["id"] == "evt_1"
        assert event["type"] == "payment_intent.succeeded"

    @pytest.mark.unit
    def test_missing_signature_rejected(self, seeded: Services) -> None:
        with pytest.raises(InvalidSignature):
            seeded.webhooks.verify_signature(b"{}", None)

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, seeded: Services) -> None:
        payload = intent_event("payment_intent.succeeded", "pi_1")

        with pytest.raises(InvalidSignature):
            seeded.webhooks.verify_signature(payload.encode(), sign(payload, "whsec_other"))

    @pytest.mark.unit
    def test_tampered_payload_rejected(self, seeded: Services) -> None:
        payload = intent_event("payment_intent.succeeded", "pi_1", amount_received=100)
        tampered = payload.replace("100", "999999")

        with pytest.raises(InvalidSignature):
            seeded.webhooks.verify_signature(tampered.encode(), sign(payload))

    @pytest.mark.unit
    def test_signed_garbage_is_invalid_request(self, seeded: Services) -> None:
        payload = "not json"

        with pytest.raises(InvalidRequest):
            seeded.webhooks.verify_signature(payload.encode(), sign(payload))


class TestOutcomeTranslation:
    @pytest.mark.unit
    def test_succeeded_intent_becomes_capture(self, seeded: Services) -> None:
        payload = intent_event(
            "payment_intent.succeeded",
            "pi_1",
            amount_received=1250,
            payment_method_types=["card"],
        )
        event = seeded.webhooks.verify_signature(payload.encode(), sign(payload))

        outcome = WebhookHandler.to_outcome_event(event)

        assert outcome.reference == "pi_1"
        assert outcome.outcome == PaymentOutcome.CAPTURED
        assert outcome.amount_cents == 1250
        assert outcome.method == "card"
        assert outcome.event_id == "evt_1"

    @pytest.mark.unit
    def test_failed_intent_carries_decline_message(self, seeded: Services) -> None:
        payload = intent_event(
            "payment_intent.payment_failed",
            "pi_1",
            last_payment_error={"message": "Your card was declined."},
        )
        event = seeded.webhooks.verify_signature(payload.encode(), sign(payload))

        outcome = WebhookHandler.to_outcome_event(event)

        assert outcome.outcome == PaymentOutcome.FAILED
        assert outcome.error_message == "Your card was declined."

    @pytest.mark.unit
    def test_unrelated_event_type_is_not_translated(self, seeded: Services) -> None:
        payload = intent_event("payment_intent.created", "pi_1")
        event = seeded.webhooks.verify_signature(payload.encode(), sign(payload))

        assert WebhookHandler.to_outcome_event(event) is None


class TestHandle:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_succeeded_event_moves_order_to_processing(
        self, seeded: Services, shipping_address: Dict[str, Any]
    ) -> None:
        order_id = await place_order(seeded, shipping_address)
        payload = intent_event("payment_intent.succeeded", order_id, amount_received=500)

        result = await seeded.webhooks.handle(payload.encode(), sign(payload))

        assert result == {
            "status": "applied",
            "event_id": "evt_1",
            "event_type": "payment_intent.succeeded",
        }
        assert (await seeded.orders.get(order_id)).status == OrderStatus.PROCESSING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_event_returns_stock(
        self, seeded: Services, shipping_address: Dict[str, Any]
    ) -> None:
        order_id = await place_order(seeded, shipping_address)
        payload = intent_event("payment_intent.payment_failed", order_id)

        result = await seeded.webhooks.handle(payload.encode(), sign(payload))

        assert result["status"] == "applied"
        assert (await seeded.orders.get(order_id)).status == OrderStatus.FAILED.value
        assert (await seeded.products.get("sku-oil")).stock == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped(
        self, seeded: Services, shipping_address: Dict[str, Any], mocker: Any
    ) -> None:
        order_id = await place_order(seeded, shipping_address)
        payload = intent_event("payment_intent.succeeded", order_id)
        apply = mocker.spy(seeded.reconciler, "apply")

        await seeded.webhooks.handle(payload.encode(), sign(payload))
        result = await seeded.webhooks.handle(payload.encode(), sign(payload))

        assert result["status"] == "duplicate"
        assert apply.call_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_idempotent_reconciler(
        self, seeded: Services, shipping_address: Dict[str, Any], mocker: Any
    ) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        order_id = await place_order(seeded, shipping_address)
        mocker.patch.object(seeded.redis, "exists", side_effect=RedisConnectionError("down"))
        mocker.patch.object(seeded.redis, "setex", side_effect=RedisConnectionError("down"))
        payload = intent_event("payment_intent.succeeded", order_id)

        first = await seeded.webhooks.handle(payload.encode(), sign(payload))
        second = await seeded.webhooks.handle(payload.encode(), sign(payload))

        assert first["status"] == "applied"
        assert second["status"] == "duplicate"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reference_is_acknowledged(self, seeded: Services) -> None:
        payload = intent_event("payment_intent.succeeded", "pi_from_another_system")

        result = await seeded.webhooks.handle(payload.encode(), sign(payload))

        assert result["status"] == "unknown_reference"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ignored_event_type(self, seeded: Services) -> None:
        payload = intent_event("charge.refunded", "ch_1")

        result = await seeded.webhooks.handle(payload.encode(), sign(payload))

        assert result["status"] == "ignored"
