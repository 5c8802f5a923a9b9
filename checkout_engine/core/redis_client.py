"""Redis client construction and error translation for the reservation store."""
from contextlib import contextmanager
from typing import Iterator

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from checkout_engine.domain.errors import StoreUnavailable

logger = structlog.get_logger(__name__)


def create_redis_client(redis_url: str) -> aioredis.Redis:
    """Create the shared Redis client; responses are decoded to str."""
    return aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )


@contextmanager
def translate_redis_errors(operation: str, **context: object) -> Iterator[None]:
    """
    Surface Redis failures as StoreUnavailable.

    Args:
        operation: Short name of the operation, logged with the failure
        **context: Extra fields for the log event
    """
    try:
        yield
    except RedisError as e:
        logger.error("redis_operation_failed", operation=operation, error=str(e), **context)
        raise StoreUnavailable(f"Reservation store unavailable ({operation})") from e
