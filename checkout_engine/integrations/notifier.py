"""Order notifications sent once a payment is captured."""
from abc import ABC, abstractmethod

import structlog

from checkout_engine.database.models import Order

logger = structlog.get_logger(__name__)


class OrderNotifier(ABC):
    @abstractmethod
    async def order_confirmed(self, order: Order) -> None:
        """Tell the customer their order is paid and being processed."""


class LoggingOrderNotifier(OrderNotifier):
    """Writes confirmations to the log; mail delivery lives outside this service."""

    async def order_confirmed(self, order: Order) -> None:
        logger.info(
            "order_confirmation_sent",
            order_id=order.id,
            user_id=order.user_id,
            total_amount_cents=order.total_amount_cents,
            currency=order.currency,
            line_count=len(order.lines),
        )
