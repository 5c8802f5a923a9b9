"""
Hold registry: per-(product, cart) soft reservations in Redis.

Layout:
- ``hold:{productId}:{cartId}``: hash with ``quantity`` and ``createdAt``
  (epoch milliseconds, written once when the hold is created)
- ``lock:hold:{productId}:{cartId}``: redis-py Lock serializing mutations
  of one pair
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from checkout_engine.core.redis_client import translate_redis_errors
from checkout_engine.domain.errors import StoreUnavailable
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

HOLD_PREFIX = "hold"
LOCK_PREFIX = "lock:hold"
QUANTITY_FIELD = "quantity"
CREATED_AT_FIELD = "createdAt"
SCAN_COUNT = 100


def hold_key(product_id: str, cart_id: str) -> str:
    return f"{HOLD_PREFIX}:{product_id}:{cart_id}"


def lock_key(product_id: str, cart_id: str) -> str:
    return f"{LOCK_PREFIX}:{product_id}:{cart_id}"


def parse_hold_key(key: str) -> Optional[Tuple[str, str]]:
    """Split ``hold:<product>:<cart>`` back into its identifiers."""
    parts = key.split(":")
    if len(parts) != 3 or parts[0] != HOLD_PREFIX or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


class CorruptHold(ValueError):
    """A hold hash is missing fields or holds non-numeric values."""


@dataclass(frozen=True)
class Hold:
    product_id: str
    cart_id: str
    quantity: int
    created_at_ms: int

    @classmethod
    def from_mapping(cls, product_id: str, cart_id: str, data: Dict[str, str]) -> Hold:
        """
        Parse a hold hash.

        Raises:
            CorruptHold: If a field is missing, non-numeric or the quantity
                is not positive
        """
        try:
            quantity = int(data[QUANTITY_FIELD])
            created_at_ms = int(data[CREATED_AT_FIELD])
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptHold(f"hold {product_id}:{cart_id} is malformed: {data!r}") from e
        if quantity <= 0:
            raise CorruptHold(f"hold {product_id}:{cart_id} has quantity {quantity}")
        return cls(product_id, cart_id, quantity, created_at_ms)


class HoldRegistry:
    """
    Redis-backed hold storage.

    Holds are only mutated under the pair lock, except for the atomic claim
    which is safe on its own (read and delete in one MULTI).
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        lock_timeout: float = 10.0,
        lock_wait: float = 5.0,
    ):
        """
        Initialize the registry.

        Args:
            redis_client: Redis client with decoded responses
            lock_timeout: Seconds after which an abandoned pair lock expires
            lock_wait: Seconds a cart mutation waits for the pair lock
        """
        self.redis = redis_client
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    def _lock(self, product_id: str, cart_id: str) -> Lock:
        return self.redis.lock(
            lock_key(product_id, cart_id),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_wait,
            sleep=0.01,
        )

    @asynccontextmanager
    async def locked(self, product_id: str, cart_id: str) -> AsyncIterator[None]:
        """
        Hold the pair lock for the duration of the block.

        Raises:
            StoreUnavailable: If the lock is not obtained within ``lock_wait``
        """
        lock = self._lock(product_id, cart_id)
        with translate_redis_errors("hold_lock_acquire", product_id=product_id, cart_id=cart_id):
            acquired = await lock.acquire()
        if not acquired:
            metrics.record_lock_contention("cart")
            logger.warning("hold_lock_busy", product_id=product_id, cart_id=cart_id)
            raise StoreUnavailable(
                "Reservation busy, try again", product_id=product_id, cart_id=cart_id
            )
        try:
            yield
        finally:
            await self._release(lock, product_id, cart_id)

    @asynccontextmanager
    async def try_locked(self, product_id: str, cart_id: str) -> AsyncIterator[bool]:
        """
        Take the pair lock without waiting.

        Yields:
            bool: Whether the lock was obtained; the block must skip its work
                when it was not
        """
        lock = self._lock(product_id, cart_id)
        with translate_redis_errors("hold_lock_acquire", product_id=product_id, cart_id=cart_id):
            acquired = await lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                await self._release(lock, product_id, cart_id)

    async def _release(self, lock: Lock, product_id: str, cart_id: str) -> None:
        try:
            await lock.release()
        except LockError as e:
            # Lock expired while held; the protected mutation already ran
            logger.warning(
                "hold_lock_release_failed", product_id=product_id, cart_id=cart_id, error=str(e)
            )

    async def get_quantity(self, product_id: str, cart_id: str) -> int:
        """Current held quantity, 0 when there is no hold."""
        with translate_redis_errors("hold_read", product_id=product_id, cart_id=cart_id):
            value = await self.redis.hget(hold_key(product_id, cart_id), QUANTITY_FIELD)
        return int(value) if value is not None else 0

    async def get(self, product_id: str, cart_id: str) -> Optional[Hold]:
        """
        Read a hold.

        Raises:
            CorruptHold: If the hash exists but cannot be parsed
        """
        with translate_redis_errors("hold_read", product_id=product_id, cart_id=cart_id):
            data = await self.redis.hgetall(hold_key(product_id, cart_id))
        if not data:
            return None
        return Hold.from_mapping(product_id, cart_id, data)

    async def add(self, product_id: str, cart_id: str, quantity: int, now_ms: int) -> int:
        """
        Merge ``quantity`` into the pair's hold, creating it if absent.

        ``createdAt`` is set with HSETNX so the hold's age counts from creation.

        Returns:
            int: Held quantity after the merge
        """
        key = hold_key(product_id, cart_id)
        with translate_redis_errors("hold_add", product_id=product_id, cart_id=cart_id):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(key, QUANTITY_FIELD, quantity)
                pipe.hsetnx(key, CREATED_AT_FIELD, now_ms)
                new_quantity, _ = await pipe.execute()
        return int(new_quantity)

    async def get_created_at(self, product_id: str, cart_id: str) -> Optional[int]:
        """Creation time of the hold, None when absent or unreadable."""
        with translate_redis_errors("hold_read", product_id=product_id, cart_id=cart_id):
            value = await self.redis.hget(hold_key(product_id, cart_id), CREATED_AT_FIELD)
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    async def decrement(self, product_id: str, cart_id: str, quantity: int) -> int:
        """
        Reduce the pair's hold, deleting it when nothing is left.

        Returns:
            int: Remaining quantity (0 when the hold was deleted)
        """
        key = hold_key(product_id, cart_id)
        with translate_redis_errors("hold_decrement", product_id=product_id, cart_id=cart_id):
            remaining = int(await self.redis.hincrby(key, QUANTITY_FIELD, -quantity))
            if remaining <= 0:
                await self.redis.delete(key)
                return 0
        return remaining

    async def claim(self, product_id: str, cart_id: str) -> Optional[Dict[str, str]]:
        """
        Atomically read and delete a hold.

        Of any number of concurrent claims on the same hold exactly one gets
        its contents; the others get None.

        Returns:
            Optional[Dict[str, str]]: The hold hash, or None if there was no hold
        """
        key = hold_key(product_id, cart_id)
        with translate_redis_errors("hold_claim", product_id=product_id, cart_id=cart_id):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hgetall(key)
                pipe.delete(key)
                data, deleted = await pipe.execute()
        if not deleted:
            return None
        return data

    async def put_back(
        self, product_id: str, cart_id: str, quantity: int, created_at_ms: int
    ) -> None:
        """
        Return units to a hold after the counter increment for them failed.

        The hold keeps its original ``createdAt`` so its expiry is unchanged.
        A failure here is logged; the caller re-raises the original error.
        """
        try:
            await self.add(product_id, cart_id, quantity, created_at_ms)
        except Exception as e:
            logger.error(
                "hold_put_back_failed",
                product_id=product_id,
                cart_id=cart_id,
                quantity=quantity,
                error=str(e),
            )
            return
        logger.warning(
            "hold_put_back", product_id=product_id, cart_id=cart_id, quantity=quantity
        )

    async def rewrite(self, product_id: str, cart_id: str, data: Dict[str, str]) -> None:
        """Write a claimed hash back unchanged (corrupt holds stay for inspection)."""
        if not data:
            return
        with translate_redis_errors("hold_rewrite", product_id=product_id, cart_id=cart_id):
            await self.redis.hset(hold_key(product_id, cart_id), mapping=data)

    async def scan_keys(self, pattern: str = f"{HOLD_PREFIX}:*") -> AsyncIterator[str]:
        """Iterate hold keys matching ``pattern`` with SCAN."""
        with translate_redis_errors("hold_scan", pattern=pattern):
            async for key in self.redis.scan_iter(match=pattern, count=SCAN_COUNT):
                yield key

    async def cart_hold_keys(self, cart_id: str) -> List[str]:
        return [key async for key in self.scan_keys(f"{HOLD_PREFIX}:*:{cart_id}")]

    async def unlink(self, keys: List[str]) -> int:
        if not keys:
            return 0
        with translate_redis_errors("hold_unlink", count=len(keys)):
            return int(await self.redis.unlink(*keys))

    async def delete_all(self) -> int:
        """Remove every hold (ledger rebuild only)."""
        keys = [key async for key in self.scan_keys()]
        return await self.unlink(keys)
