"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Gateway circuit breaker state
- Reconciliation backlog depth
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text

from paymentservice.core.backlog import ReconciliationBacklog
from paymentservice.database.connection import Database
from paymentservice.integrations.mpesa_client import CircuitBreaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway circuit breaker check
    - Backlog depth (informational)
    - Overall system health status
    """

    def __init__(
        self,
        database: Database,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backlog: Optional[ReconciliationBacklog] = None,
    ) -> None:
        self.database = database
        self.circuit_breaker = circuit_breaker
        self.backlog = backlog

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.database.session() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    def check_gateway(self) -> Dict[str, Any]:
        """
        Check the gateway circuit breaker.

        Raises:
            HealthCheckError: If the circuit is open
        """
        state = self.circuit_breaker.state if self.circuit_breaker else "closed"
        if state == "open":
            raise HealthCheckError("Gateway circuit breaker is open")
        return {
            "status": "healthy",
            "service": "mpesa",
            "circuit_breaker": state,
        }

    async def check_backlog(self) -> Dict[str, Any]:
        """Report backlog depth. Never fails readiness: a backlog is drained, not fatal."""
        if self.backlog is None:
            return {"status": "healthy", "service": "backlog", "pending": 0}
        pending = await self.backlog.get_pending_count()
        return {
            "status": "healthy",
            "service": "backlog",
            "pending": pending,
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

        try:
            checks["mpesa"] = self.check_gateway()
        except HealthCheckError as e:
            checks["mpesa"] = {
                "status": "unhealthy",
                "service": "mpesa",
                "error": str(e),
            }
            all_healthy = False

        if checks["database"]["status"] == "healthy":
            checks["backlog"] = await self.check_backlog()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Checks if application is ready to accept traffic.
        """
        return await self.check_all()
