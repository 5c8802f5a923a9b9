"""
Payment gateway over RabbitMQ request/reply.

The payment service consumes ``payment_request_queue``. Each request gets
its own exclusive, auto-deleted reply queue and a correlation id; the reply
is awaited with a hard deadline and never retried, because a late reply may
still mean the payment was created.
"""
import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractIncomingMessage
from aio_pika.exceptions import AMQPException

from checkout_engine.domain.errors import PaymentProviderError, PaymentRequestTimeout
from checkout_engine.integrations.payment_gateway import (
    PaymentGateway,
    PaymentReference,
    PaymentRequest,
)
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ConnectFactory = Callable[[str], Awaitable[AbstractConnection]]


class BrokerPaymentGateway(PaymentGateway):
    """
    Payment gateway backed by a sibling payment service over AMQP.

    Reply body::

        {"success": true, "data": {"orderId": ..., "amount": ..., "status": ..., "key": ...}}
        {"success": false, "description": "..."}
    """

    provider = "broker"

    def __init__(
        self,
        rabbitmq_url: str,
        request_queue: str = "payment_request_queue",
        reply_timeout_seconds: float = 15.0,
        connect: Optional[ConnectFactory] = None,
    ):
        """
        Initialize the gateway.

        Args:
            rabbitmq_url: AMQP connection URL
            request_queue: Well-known queue the payment service consumes
            reply_timeout_seconds: Deadline for the reply
            connect: Connection factory, ``aio_pika.connect`` by default
        """
        self.rabbitmq_url = rabbitmq_url
        self.request_queue = request_queue
        self.reply_timeout_seconds = reply_timeout_seconds
        self._connect = connect or aio_pika.connect

    @asynccontextmanager
    async def _channel(self) -> AsyncIterator[AbstractChannel]:
        """Per-call connection and channel, closed on exit whatever happened."""
        connection = await self._connect(self.rabbitmq_url)
        try:
            yield await connection.channel()
        finally:
            try:
                await connection.close()
            except Exception as e:
                logger.warning("payment_broker_close_failed", error=str(e))

    async def request_payment(self, request: PaymentRequest) -> PaymentReference:
        """
        Send a payment request and wait for the matching reply.

        Raises:
            PaymentRequestTimeout: If no reply arrives within the deadline
            PaymentProviderError: If the broker fails or the service refuses
        """
        started = time.perf_counter()
        correlation_id = uuid.uuid4().hex
        log = logger.bind(correlation_id=correlation_id, receipt=request.receipt)

        try:
            body = await self._round_trip(request, correlation_id)
        except asyncio.TimeoutError as e:
            metrics.record_payment_request(self.provider, "timeout", time.perf_counter() - started)
            log.error("payment_request_timeout", timeout_seconds=self.reply_timeout_seconds)
            raise PaymentRequestTimeout(
                f"No payment reply within {self.reply_timeout_seconds:g}s",
                correlation_id=correlation_id,
            ) from e
        except (AMQPException, OSError) as e:
            metrics.record_payment_request(self.provider, "error", time.perf_counter() - started)
            log.error("payment_broker_unavailable", error=str(e))
            raise PaymentProviderError(f"Payment broker unavailable: {e}") from e

        try:
            reference = self._parse_reply(body)
        except PaymentProviderError as e:
            metrics.record_payment_request(self.provider, "error", time.perf_counter() - started)
            log.error("payment_request_rejected", error=e.message)
            raise

        metrics.record_payment_request(self.provider, "success", time.perf_counter() - started)
        log.info(
            "payment_request_completed",
            reference=reference.reference,
            amount_cents=reference.amount_cents,
        )
        return reference

    async def _round_trip(self, request: PaymentRequest, correlation_id: str) -> bytes:
        async with self._channel() as channel:
            await channel.declare_queue(self.request_queue, durable=True)
            reply_queue = await channel.declare_queue("", exclusive=True, auto_delete=True)

            reply: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()

            async def on_reply(message: AbstractIncomingMessage) -> None:
                if message.correlation_id != correlation_id:
                    logger.warning(
                        "payment_reply_unexpected_correlation_id",
                        expected=correlation_id,
                        received=message.correlation_id,
                    )
                    return
                if not reply.done():
                    reply.set_result(message.body)

            await reply_queue.consume(on_reply, no_ack=True)
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=json.dumps(request.to_message()).encode(),
                    content_type="application/json",
                    correlation_id=correlation_id,
                    reply_to=reply_queue.name,
                ),
                routing_key=self.request_queue,
            )
            logger.info(
                "payment_request_sent",
                correlation_id=correlation_id,
                amount_cents=request.amount_cents,
            )
            return await asyncio.wait_for(reply, timeout=self.reply_timeout_seconds)

    def _parse_reply(self, body: bytes) -> PaymentReference:
        try:
            response = json.loads(body)
        except (TypeError, ValueError) as e:
            raise PaymentProviderError("Payment service sent an unreadable reply") from e

        if not isinstance(response, dict) or response.get("success") is not True:
            description = "Payment service refused the request"
            if isinstance(response, dict) and response.get("description"):
                description = str(response["description"])
            raise PaymentProviderError(description)

        data: Dict[str, Any] = response.get("data") or {}
        try:
            return PaymentReference(
                reference=str(data["orderId"]),
                amount_cents=int(data["amount"]),
                status=str(data.get("status", "created")),
                checkout_token=data.get("key"),
                provider=self.provider,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentProviderError(f"Payment reply is missing fields: {data!r}") from e

    async def check_health(self) -> Dict[str, Any]:
        async with self._channel():
            pass
        return {
            "status": "healthy",
            "service": "payment_broker",
            "message": "RabbitMQ connection successful",
        }
