"""
Stock ledger: per-product "available for new reservations" counters in Redis.

Each counter lives at ``stock:{productId}``. At quiescence

    counter(p) + sum of active holds on p == authoritative stock of p

Every operation is a single Redis command. Reads are retried with backoff;
writes are never retried, since a retried INCRBY after a lost reply would
apply twice.
"""
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from checkout_engine.core.hold_registry import HoldRegistry
from checkout_engine.core.redis_client import translate_redis_errors

logger = structlog.get_logger(__name__)

STOCK_PREFIX = "stock"


def stock_key(product_id: str) -> str:
    return f"{STOCK_PREFIX}:{product_id}"


@dataclass(frozen=True)
class RebuildReport:
    counters_set: int
    holds_removed: int


class StockLedger:
    """Atomic per-product counters."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis = redis_client

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True,
    )
    async def _read(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def get(self, product_id: str) -> int:
        """Current counter value; a missing counter reads as 0."""
        with translate_redis_errors("stock_get", product_id=product_id):
            value = await self._read(stock_key(product_id))
        return int(value) if value is not None else 0

    async def decrement_by(self, product_id: str, quantity: int) -> int:
        """
        DECRBY the counter.

        May go negative; callers check availability and revert when needed.

        Returns:
            int: Counter value after the decrement
        """
        with translate_redis_errors("stock_decrement", product_id=product_id):
            return int(await self.redis.decrby(stock_key(product_id), quantity))

    async def increment_by(self, product_id: str, quantity: int) -> int:
        """INCRBY the counter and return the new value."""
        with translate_redis_errors("stock_increment", product_id=product_id):
            return int(await self.redis.incrby(stock_key(product_id), quantity))

    async def set(self, product_id: str, quantity: int) -> None:
        """Overwrite the counter (product registration and recovery only)."""
        with translate_redis_errors("stock_set", product_id=product_id):
            await self.redis.set(stock_key(product_id), quantity)
        logger.info("stock_counter_set", product_id=product_id, stock=quantity)

    async def rebuild(
        self, products: Iterable[Tuple[str, int]], holds: HoldRegistry
    ) -> RebuildReport:
        """
        Recover the ledger from authoritative stock.

        Deletes every hold and sets each counter to the product's stock. Run
        it when Redis data was lost or is suspect; carts in flight lose their
        reservations and have to add items again.

        Args:
            products: ``(product_id, authoritative_stock)`` pairs
            holds: Hold registry whose holds are discarded

        Returns:
            RebuildReport: Counters written and holds removed
        """
        holds_removed = await holds.delete_all()
        counters_set = 0
        for product_id, stock in products:
            await self.set(product_id, stock)
            counters_set += 1

        logger.warning(
            "stock_ledger_rebuilt", counters_set=counters_set, holds_removed=holds_removed
        )
        return RebuildReport(counters_set=counters_set, holds_removed=holds_removed)
