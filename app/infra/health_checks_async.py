# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any, Awaitable, Callable
from enum import Enum

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.schema_validator import REQUIRED_TABLES, get_schema_info

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Database reachable, relay tables present, response time sane."""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                missing_tables = [
                    table for table in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }

        if missing_tables:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Missing required tables",
                "error": f"Missing: {', '.join(missing_tables)}"
            }

        duration = time.perf_counter() - start
        if duration > 1.0:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Slow database response: {duration:.3f}s",
                "response_time": duration
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Database operational",
            "response_time": duration
        }


class AsyncSessionSummaryHealthCheck(AsyncHealthCheck):
    """Session counts per status (diagnostic only)."""

    def __init__(self):
        super().__init__("sessions", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS n FROM relay_sessions GROUP BY status"
                )
        except Exception as exc:
            logger.error("Session summary health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Session summary failed",
                "error": str(exc)[:200]
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Session store operational",
            "by_status": {row['status']: row['n'] for row in rows},
        }


class AsyncGatewayHealthCheck(AsyncHealthCheck):
    """Gateway reachable. Non-critical: events still flow in without it."""

    def __init__(self, probe: Callable[[], Awaitable[bool]]):
        super().__init__("gateway", critical=False)
        self.probe = probe

    async def check(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            await self.probe()
        except Exception as exc:
            logger.warning(f"Gateway health check failed: {exc}")
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Gateway unreachable",
                "error": str(exc)[:200]
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Gateway reachable",
            "response_time": time.perf_counter() - start,
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            AsyncSessionSummaryHealthCheck(),
        ]

    def add(self, check: AsyncHealthCheck) -> None:
        self.checks.append(check)

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},   (only with include_non_critical)
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        report = {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time()
        }
        if include_non_critical:
            try:
                report["schema"] = await get_schema_info()
            except Exception as exc:
                report["schema"] = {"error": str(exc)[:200]}
        return report


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
