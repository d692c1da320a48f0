"""
Health checks for liveness/readiness probes.

Checks:
- Payment store reachability
- Webhook audit log reachability
"""
from typing import Any, Dict

import structlog

from savopay_relay.store import PaymentStore, WebhookEventLog

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the relay's storage dependencies."""

    def __init__(self, store: PaymentStore, events: WebhookEventLog) -> None:
        self.store = store
        self.events = events

    async def check_store(self) -> Dict[str, Any]:
        """
        Check payment store connectivity with a one-row listing.

        Raises:
            HealthCheckError: If the store cannot be queried
        """
        try:
            await self.store.list(limit=1)
        except Exception as e:
            logger.error("store_health_check_failed", error=str(e))
            raise HealthCheckError(f"Payment store health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "payment_store",
            "backend": type(self.store).__name__,
        }

    async def check_audit_log(self) -> Dict[str, Any]:
        """Check webhook audit log connectivity."""
        try:
            await self.events.list_recent(limit=1)
        except Exception as e:
            logger.error("audit_log_health_check_failed", error=str(e))
            raise HealthCheckError(f"Audit log health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "audit_log",
            "backend": type(self.events).__name__,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("payment_store", self.check_store), ("audit_log", self.check_audit_log)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up, dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies are reachable."""
        return await self.check_all()
