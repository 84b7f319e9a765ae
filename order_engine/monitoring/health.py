"""
Health checks for liveness/readiness probes.

Checks:
- Ledger connectivity
- Redis connectivity (claims and notifications)
- Payment gateway configuration
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from order_engine.config import Settings
from order_engine.ledger.base import LedgerStore

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""


class HealthCheck:
    """Probes the engine's dependencies."""

    def __init__(
        self,
        ledger: LedgerStore,
        settings: Settings,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.ledger = ledger
        self.settings = settings
        self.redis_client = redis_client

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Check ledger connectivity.

        Raises:
            HealthCheckError: If the ledger cannot be reached
        """
        try:
            await self.ledger.ping()
        except Exception as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger health check failed: {e}") from e
        return {
            "status": "healthy",
            "service": "ledger",
            "backend": self.settings.ledger_backend,
        }

    async def check_redis(self) -> Dict[str, Any]:
        if self.redis_client is None:
            return {"status": "skipped", "service": "redis", "message": "Redis not in use"}
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        return {"status": "healthy", "service": "redis"}

    async def check_gateway(self) -> Dict[str, Any]:
        """Configuration only. The processor itself is not called."""
        if not self.settings.stripe_webhook_secret:
            raise HealthCheckError("Stripe webhook secret is not configured")
        return {
            "status": "healthy",
            "service": "stripe",
            "test_mode": self.settings.is_test_mode,
            "api_version": self.settings.stripe_api_version,
        }

    async def check_all(self) -> Dict[str, Any]:
        checks = {}
        all_healthy = True
        for name, probe in (
            ("ledger", self.check_ledger),
            ("redis", self.check_redis),
            ("stripe", self.check_gateway),
        ):
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
        """Process is up. No dependency checks."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
