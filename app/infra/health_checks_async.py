# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Any, Dict, Iterable
from enum import Enum

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("profiles", "jobs", "notifications")


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
        """Return a dict with 'status', 'details', and optionally 'error'."""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Database reachable, schema migrated, PostGIS functions present."""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.perf_counter()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                missing = [
                    table for table in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
                if missing:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing)}",
                    }

                functions = await conn.fetchval(
                    "SELECT count(*)::int FROM pg_proc "
                    "WHERE proname IN ('get_nearby_employees', 'get_nearby_jobs')"
                )

            duration = time.perf_counter() - start
            if functions < 2:
                # Feed falls back to recent jobs, dispatch skips; not fatal
                return {
                    "status": HealthStatus.DEGRADED,
                    "details": "Proximity functions missing",
                    "response_time": duration,
                }
            if duration > 1.0:
                return {
                    "status": HealthStatus.DEGRADED,
                    "details": f"Slow database response: {duration:.3f}s",
                    "response_time": duration,
                }
            return {
                "status": HealthStatus.HEALTHY,
                "details": "Database operational",
                "response_time": duration,
            }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }


class PeriodicTasksHealthCheck(AsyncHealthCheck):
    """Background loops (dispatch, reconciliation) are alive in this process."""

    def __init__(self, tasks: Iterable[Any]):
        super().__init__("periodic_tasks", critical=False)
        self._tasks = list(tasks)

    async def check(self) -> Dict[str, Any]:
        stopped = [t.name for t in self._tasks if not t.is_running]
        details = {t.name: {"runs": t.runs, "failures": t.failures} for t in self._tasks}
        if stopped:
            return {
                "status": HealthStatus.DEGRADED,
                "details": details,
                "error": f"Not running: {', '.join(stopped)}",
            }
        return {"status": HealthStatus.HEALTHY, "details": details}


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [AsyncDatabaseHealthCheck()]

    def add(self, check: AsyncHealthCheck) -> None:
        self.checks.append(check)

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...}, "timestamp": float}
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

        return {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time(),
        }
