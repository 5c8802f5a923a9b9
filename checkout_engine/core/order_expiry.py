"""
Order expiry sweep.

Returns authoritative stock for orders whose payment never settled:

- ``pending`` orders older than the pending TTL → ``pending_stock_rolledback``
- ``failed`` orders whose stock release never completed → ``failed_stock_rolledback``

Every order is released in its own transaction guarded on its current status
and an empty ``stock_released_at``, so overlapping sweeps and the reconciler
cannot restore the same order twice.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import structlog

from checkout_engine.database.store import OrderStore
from checkout_engine.domain.status import OrderStatus
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExpiryReport:
    pending_rolled_back: List[str] = field(default_factory=list)
    failed_rolled_back: List[str] = field(default_factory=list)
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "pending_rolled_back": len(self.pending_rolled_back),
            "failed_rolled_back": len(self.failed_rolled_back),
            "errors": self.errors,
        }


class OrderExpirySweep:
    def __init__(
        self,
        orders: OrderStore,
        pending_ttl_seconds: int = 900,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.orders = orders
        self.pending_ttl = timedelta(seconds=pending_ttl_seconds)
        self.clock = clock

    async def run_once(self) -> ExpiryReport:
        """
        Run one sweep.

        A failure on one order is logged and counted; the sweep moves on and
        the order is retried next time.

        Returns:
            ExpiryReport: Orders rolled back per path
        """
        report = ExpiryReport()
        cutoff = self.clock() - self.pending_ttl

        for order_id in await self.orders.find_pending_older_than(cutoff):
            if await self._release(
                order_id,
                OrderStatus.PENDING,
                OrderStatus.PENDING_STOCK_ROLLEDBACK,
                report,
            ):
                report.pending_rolled_back.append(order_id)

        for order_id in await self.orders.find_failed_unreleased():
            if await self._release(
                order_id,
                OrderStatus.FAILED,
                OrderStatus.FAILED_STOCK_ROLLEDBACK,
                report,
            ):
                report.failed_rolled_back.append(order_id)

        logger.info("order_expiry_sweep_completed", **report.to_dict())
        return report

    async def _release(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        report: ExpiryReport,
    ) -> bool:
        try:
            released = await self.orders.release_stock(
                order_id, from_status, to_status, reason="order_expiry"
            )
        except Exception as e:
            report.errors += 1
            metrics.record_compensation("order_expiry", "failed")
            logger.error(
                "order_expiry_release_failed",
                order_id=order_id,
                from_status=from_status.value,
                error=str(e),
                exc_info=True,
            )
            return False

        if released:
            metrics.record_compensation("order_expiry", "success")
            metrics.record_order_expired(from_status.value)
        return released
