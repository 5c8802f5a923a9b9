"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity
- Payment backend reachability (Stripe or the payment broker)
"""
from typing import Any, Awaitable, Callable, Dict

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_engine.integrations.payment_gateway import PaymentGateway

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Payment backend check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: aioredis.Redis,
        gateway: PaymentGateway,
    ) -> None:
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_payment_backend(self) -> Dict[str, Any]:
        """
        Check the configured payment backend.

        Raises:
            HealthCheckError: If the backend is unreachable
        """
        try:
            return await self.gateway.check_health()
        except Exception as e:
            logger.error(
                "payment_backend_health_check_failed",
                provider=self.gateway.provider,
                error=str(e),
            )
            raise HealthCheckError(f"Payment backend health check failed: {str(e)}") from e

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        probes: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "redis": self.check_redis,
            "payment_backend": self.check_payment_backend,
        }
        checks = {}
        all_healthy = True

        for name, probe in probes.items():
            try:
                checks[name] = await probe()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
