"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Provider gateway circuit breaker state
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check (when running against a database)
    - Gateway circuit breaker check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        circuit_breaker: Optional[Any] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Database session factory; None for in-memory storage
            circuit_breaker: Gateway circuit breaker exposing a `state` attribute
        """
        self.session_factory = session_factory
        self.circuit_breaker = circuit_breaker

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        if self.session_factory is None:
            return {
                "status": "healthy",
                "service": "database",
                "message": "In-memory storage",
            }

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

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Report the provider circuit breaker.

        An open circuit means initiations will fail fast; callbacks still work,
        so this is reported as degraded rather than unhealthy.
        """
        state = getattr(self.circuit_breaker, "state", "closed")
        return {
            "status": "healthy" if state == "closed" else "degraded",
            "service": "mpesa",
            "circuit_breaker": state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
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

        checks["mpesa"] = await self.check_gateway()

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
        """Readiness probe endpoint."""
        return await self.check_all()
