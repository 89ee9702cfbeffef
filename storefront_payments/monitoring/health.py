"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Outbox backlog
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_payments.config import get_settings
from storefront_payments.database.connection import get_session_factory
from storefront_payments.database.models import OutboxEvent
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Backlog above this marks the service degraded, not unready
OUTBOX_BACKLOG_WARNING = 1000


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The payment gateway is deliberately not probed here: its reachability
    is per-environment and an outage there must not take the API out of
    rotation, since callbacks for finished payments still need answering.
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        """Initialize health check service."""
        self.settings = get_settings()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory, resolved lazily from the global engine."""
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_outbox(self) -> Dict[str, Any]:
        """
        Report the number of undelivered outbox events.

        Returns:
            Dict[str, Any]: Outbox health status

        Raises:
            HealthCheckError: If the backlog cannot be read
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(func.count()).select_from(OutboxEvent).where(
                        OutboxEvent.published.is_(False)
                    )
                )
                pending = int(result.scalar_one())
        except (SQLAlchemyError, OSError) as e:
            logger.error("outbox_health_check_failed", error=str(e))
            raise HealthCheckError(f"Outbox health check failed: {str(e)}")

        metrics.set_outbox_queue_depth(pending)
        return {
            "status": "degraded" if pending > OUTBOX_BACKLOG_WARNING else "healthy",
            "service": "outbox",
            "pending_events": pending,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        if all_healthy:
            try:
                checks["outbox"] = await self.check_outbox()
            except HealthCheckError as e:
                checks["outbox"] = {
                    "status": "unhealthy",
                    "service": "outbox",
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "payment_environment": self.settings.payment_environment.value,
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
        """Readiness probe endpoint."""
        return await self.check_all()
