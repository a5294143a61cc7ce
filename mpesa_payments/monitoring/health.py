"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Gateway configuration completeness
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway configuration check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ) -> None:
        """Initialize health check service."""
        self.session_factory = session_factory
        self.settings = settings or get_settings()

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

    def check_gateway(self) -> Dict[str, Any]:
        """
        Check that the gateway credentials and callback URLs are configured.

        No request is sent; an authentication round-trip per probe would
        consume gateway rate limits.

        Raises:
            HealthCheckError: If required settings are missing
        """
        required = {
            "mpesa_consumer_key": self.settings.mpesa_consumer_key,
            "mpesa_consumer_secret": self.settings.mpesa_consumer_secret,
            "mpesa_passkey": self.settings.mpesa_passkey,
            "mpesa_shortcode": self.settings.mpesa_shortcode,
            "mpesa_stk_callback_url": self.settings.mpesa_stk_callback_url,
        }
        missing = sorted(name for name, value in required.items() if not value)
        if missing:
            logger.error("gateway_health_check_failed", missing=missing)
            raise HealthCheckError(f"Gateway not configured: missing {', '.join(missing)}")

        return {
            "status": "healthy",
            "service": "gateway",
            "environment": self.settings.mpesa_environment,
            "base_url": self.settings.base_url,
            "disbursements_enabled": bool(
                self.settings.mpesa_security_credential
                and self.settings.mpesa_b2c_result_url
                and self.settings.mpesa_b2c_timeout_url
            ),
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

        try:
            checks["gateway"] = self.check_gateway()
        except HealthCheckError as e:
            checks["gateway"] = {
                "status": "unhealthy",
                "service": "gateway",
                "error": str(e),
            }
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
        """Readiness probe endpoint; verifies all dependencies."""
        return await self.check_all()
