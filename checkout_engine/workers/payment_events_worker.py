"""
Payment events background worker.

Consumes payment outcomes published by the payment service on the broker and
applies them through the reconciler.
"""
import asyncio
import signal
from typing import Any

import structlog

from checkout_engine.config import get_settings
from checkout_engine.database.connection import close_db, init_db
from checkout_engine.integrations.payment_events import PaymentEventConsumer
from checkout_engine.monitoring.logging import setup_logging
from checkout_engine.services import build_services

logger = structlog.get_logger(__name__)


async def start_payment_events_worker() -> None:
    """
    Start the payment events worker.

    Runs until SIGINT or SIGTERM.
    """
    setup_logging("payment-events")
    settings = get_settings()

    logger.info(
        "payment_events_worker_starting",
        exchange=settings.payment_events_exchange,
        queue=settings.payment_events_queue,
    )

    await init_db()
    services = build_services(settings)
    consumer = PaymentEventConsumer(
        services.reconciler,
        rabbitmq_url=settings.rabbitmq_url,
        exchange_name=settings.payment_events_exchange,
        queue_name=settings.payment_events_queue,
        prefetch_count=settings.payment_events_prefetch,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payment_events_worker_shutdown_signal_received", signal=sig)
        consumer.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await consumer.start()
    except Exception as e:
        logger.error("payment_events_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        await close_db()
        logger.info("payment_events_worker_stopped")


def main() -> None:
    asyncio.run(start_payment_events_worker())


if __name__ == "__main__":
    main()
