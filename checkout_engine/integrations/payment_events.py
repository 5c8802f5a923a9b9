"""
Consumer of payment outcome events published by the payment service.

Topology: durable fanout exchange ``payment_events`` bound to a durable
queue. A message is acknowledged only after the reconciler has applied it;
a reconciler failure requeues it, and an undecodable message is rejected
for good.

Body::

    {"paymentDetails": {"order_id": ..., "amount": ..., "method": ...},
     "paymentStatus": "captured" | "payment.failed" | "failed"}
"""
import asyncio
import json
from typing import Any, Dict, Optional

import aio_pika
import structlog
from aio_pika.abc import AbstractIncomingMessage, AbstractRobustConnection

from checkout_engine.core.reconciler import Reconciler
from checkout_engine.domain.models import PaymentOutcome, PaymentOutcomeEvent

logger = structlog.get_logger(__name__)

STATUS_OUTCOMES: Dict[str, PaymentOutcome] = {
    "captured": PaymentOutcome.CAPTURED,
    "payment.failed": PaymentOutcome.FAILED,
    "failed": PaymentOutcome.FAILED,
}


class PoisonMessage(ValueError):
    """A message that can never be processed."""


def parse_payment_event(body: bytes, message_id: Optional[str] = None) -> PaymentOutcomeEvent:
    """
    Decode a payment event message.

    Raises:
        PoisonMessage: If the body is not JSON, lacks the order id or carries
            an unknown status
    """
    try:
        data = json.loads(body)
        details: Dict[str, Any] = data["paymentDetails"]
        status = data["paymentStatus"]
        reference = str(details["order_id"])
    except (TypeError, ValueError, KeyError) as e:
        raise PoisonMessage(f"Undecodable payment event: {e}") from e

    outcome = STATUS_OUTCOMES.get(status)
    if outcome is None:
        raise PoisonMessage(f"Unknown payment status {status!r}")

    amount = details.get("amount")
    try:
        amount_cents = int(amount) if amount is not None else None
    except (TypeError, ValueError) as e:
        raise PoisonMessage(f"Invalid amount {amount!r}") from e

    return PaymentOutcomeEvent(
        reference=reference,
        outcome=outcome,
        amount_cents=amount_cents,
        method=details.get("method"),
        event_id=message_id or details.get("id"),
        source="broker",
        error_message=details.get("error_description"),
        raw=data,
    )


class PaymentEventConsumer:
    """Feeds broker payment events to the reconciler."""

    def __init__(
        self,
        reconciler: Reconciler,
        rabbitmq_url: str,
        exchange_name: str = "payment_events",
        queue_name: str = "checkout.payment_events",
        prefetch_count: int = 10,
    ):
        self.reconciler = reconciler
        self.rabbitmq_url = rabbitmq_url
        self.exchange_name = exchange_name
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self._connection: Optional[AbstractRobustConnection] = None
        self._stopped = asyncio.Event()

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        """
        Process one delivery.

        Poison messages are rejected without requeue; any reconciler error
        leaves the context manager and the message is requeued.
        """
        try:
            event = parse_payment_event(message.body, message.message_id)
        except PoisonMessage as e:
            logger.error(
                "payment_event_rejected",
                message_id=message.message_id,
                error=str(e),
                body=message.body[:512].decode("utf-8", errors="replace"),
            )
            await message.reject(requeue=False)
            return

        async with message.process(requeue=True):
            await self.reconciler.apply(event)

    async def start(self) -> None:
        """Connect, declare the topology and consume until stopped."""
        self._connection = await aio_pika.connect_robust(self.rabbitmq_url)
        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=self.prefetch_count)

        exchange = await channel.declare_exchange(
            self.exchange_name, aio_pika.ExchangeType.FANOUT, durable=True
        )
        queue = await channel.declare_queue(self.queue_name, durable=True)
        await queue.bind(exchange)
        await queue.consume(self.handle_message)

        logger.info(
            "payment_event_consumer_started",
            exchange=self.exchange_name,
            queue=self.queue_name,
        )
        try:
            await self._stopped.wait()
        finally:
            await self._connection.close()
            logger.info("payment_event_consumer_stopped")

    def stop(self) -> None:
        self._stopped.set()
