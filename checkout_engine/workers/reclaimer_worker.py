"""
Reservation reclaim background worker.

Every interval, gives expired cart holds back to the stock counters and rolls
back the authoritative stock of abandoned pending orders and failed orders.
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from checkout_engine.config import get_settings
from checkout_engine.database.connection import close_db, init_db
from checkout_engine.monitoring.logging import setup_logging
from checkout_engine.services import Services, build_services

logger = structlog.get_logger(__name__)


async def run_sweeps(services: Services) -> Dict[str, Any]:
    """
    Run one reclaim sweep and one order expiry sweep.

    A failure of one sweep is logged and does not prevent the other.

    Returns:
        Dict[str, Any]: Report of each sweep that completed
    """
    results: Dict[str, Any] = {}

    try:
        results["reservations"] = (await services.reclaimer.run_once()).to_dict()
    except Exception as e:
        logger.error("reservation_reclaim_failed", error=str(e))

    try:
        results["orders"] = (await services.order_expiry.run_once()).to_dict()
    except Exception as e:
        logger.error("order_expiry_failed", error=str(e))

    logger.info("reclaim_sweeps_completed", **results)
    return results


async def start_reclaimer_worker(once: bool = False) -> None:
    """
    Start the reclaimer worker.

    Args:
        once: Run a single pass and exit
    """
    setup_logging("reclaimer")
    settings = get_settings()
    interval = settings.reclaim_interval_seconds

    logger.info("reclaimer_worker_starting", interval_seconds=interval, once=once)

    await init_db()
    services = build_services(settings)
    stopping = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reclaimer_worker_shutdown_signal_received", signal=sig)
        stopping.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stopping.is_set():
            await run_sweeps(services)
            if once:
                break
            try:
                await asyncio.wait_for(stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await services.close()
        await close_db()
        logger.info("reclaimer_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reservation reclaim worker")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_reclaimer_worker(once=args.once))


if __name__ == "__main__":
    main()
