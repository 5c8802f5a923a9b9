"""
Reservation reclaimer.

Periodically returns the units of abandoned holds to the stock ledger. A hold
is expired once ``now - createdAt >= ttl``. Expired holds are claimed
atomically, so a hold restored by a concurrent sweep or cart restore is never
counted twice.
"""
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from checkout_engine.core.hold_registry import (
    CorruptHold,
    Hold,
    HoldRegistry,
    parse_hold_key,
)
from checkout_engine.core.stock_ledger import StockLedger
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class ReclaimReport:
    """Counts from a single sweep."""

    scanned: int = 0
    reclaimed: int = 0
    units_restored: int = 0
    skipped_invalid: int = 0
    skipped_busy: int = 0

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "reclaimed": self.reclaimed,
            "units_restored": self.units_restored,
            "skipped_invalid": self.skipped_invalid,
            "skipped_busy": self.skipped_busy,
        }


class ReservationReclaimer:
    """Sweeps expired holds back into the stock ledger."""

    def __init__(
        self,
        ledger: StockLedger,
        holds: HoldRegistry,
        hold_ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.holds = holds
        self.hold_ttl_ms = hold_ttl_seconds * 1000
        self.clock = clock

    async def run_once(self) -> ReclaimReport:
        """
        Run one sweep over every hold.

        Holds with missing or corrupt fields are logged and left in place,
        including ones found corrupt only after they were claimed. Holds whose
        pair lock is taken are skipped until the next sweep. If a counter write
        fails the claimed hold is put back and the error ends the sweep.

        Returns:
            ReclaimReport: What the sweep found and restored
        """
        started = time.perf_counter()
        now_ms = int(self.clock() * 1000)
        report = ReclaimReport()

        logger.info("reclaim_sweep_started", hold_ttl_ms=self.hold_ttl_ms)

        async for key in self.holds.scan_keys():
            report.scanned += 1
            pair = parse_hold_key(key)
            if pair is None:
                report.skipped_invalid += 1
                logger.warning("reclaim_invalid_hold_key", key=key)
                continue
            product_id, cart_id = pair

            try:
                hold = await self.holds.get(product_id, cart_id)
            except CorruptHold as e:
                report.skipped_invalid += 1
                logger.warning("reclaim_corrupt_hold", key=key, error=str(e))
                continue
            if hold is None or now_ms - hold.created_at_ms < self.hold_ttl_ms:
                continue

            await self._reclaim(hold, report)

        duration = time.perf_counter() - started
        metrics.record_reclaim_sweep(report.reclaimed, report.units_restored, duration)
        logger.info("reclaim_sweep_completed", duration_seconds=duration, **report.to_dict())
        return report

    async def _reclaim(self, hold: Hold, report: ReclaimReport) -> None:
        async with self.holds.try_locked(hold.product_id, hold.cart_id) as acquired:
            if not acquired:
                report.skipped_busy += 1
                metrics.record_lock_contention("reclaimer")
                logger.info(
                    "reclaim_hold_busy", product_id=hold.product_id, cart_id=hold.cart_id
                )
                return

            data = await self.holds.claim(hold.product_id, hold.cart_id)
            if data is None:
                return
            try:
                claimed = Hold.from_mapping(hold.product_id, hold.cart_id, data)
            except CorruptHold as e:
                report.skipped_invalid += 1
                logger.error(
                    "reclaim_claimed_corrupt_hold",
                    product_id=hold.product_id,
                    cart_id=hold.cart_id,
                    error=str(e),
                )
                await self.holds.rewrite(hold.product_id, hold.cart_id, data)
                return

            try:
                await self.ledger.increment_by(claimed.product_id, claimed.quantity)
            except Exception:
                logger.error(
                    "reclaim_restock_failed",
                    product_id=claimed.product_id,
                    cart_id=claimed.cart_id,
                    quantity=claimed.quantity,
                )
                await self.holds.put_back(
                    claimed.product_id, claimed.cart_id, claimed.quantity, claimed.created_at_ms
                )
                raise

        report.reclaimed += 1
        report.units_restored += claimed.quantity
        logger.info(
            "hold_reclaimed",
            product_id=claimed.product_id,
            cart_id=claimed.cart_id,
            quantity=claimed.quantity,
            age_ms=int(self.clock() * 1000) - claimed.created_at_ms,
        )
