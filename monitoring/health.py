"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity
- Cardcom gateway reachability
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from config import get_settings
from database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""

    pass


class HealthCheck:
    """
    Health check service for the billing service dependencies.

    The Cardcom client is optional: without it the gateway check is
    reported as skipped instead of failing readiness.
    """

    def __init__(self, cardcom_client: Optional[Any] = None) -> None:
        self.settings = get_settings()
        self.cardcom_client = cardcom_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        finally:
            await redis_client.aclose()

        return {"status": "healthy", "service": "redis"}

    async def check_cardcom(self) -> Dict[str, Any]:
        """
        Check that the Cardcom gateway answers.

        Raises:
            HealthCheckError: If the gateway is unreachable
        """
        if self.cardcom_client is None:
            return {"status": "skipped", "service": "cardcom"}

        try:
            latency = await self.cardcom_client.ping()
        except Exception as e:
            logger.error("cardcom_health_check_failed", error=str(e))
            raise HealthCheckError(f"Cardcom health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "cardcom",
            "latency_ms": round(latency * 1000, 1),
            "circuit_breaker": self.cardcom_client.circuit_breaker.state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall status plus one entry per dependency
        """
        probes: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "redis": self.check_redis,
            "cardcom": self.check_cardcom,
        }
        checks: Dict[str, Any] = {}
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
        """Liveness probe: the process is running, dependencies are not checked."""
        return {"status": "alive", "service": self.settings.app_name}

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies are reachable."""
        return await self.check_all()
