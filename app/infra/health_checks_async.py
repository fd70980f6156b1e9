# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.config import settings
from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = (
    "contacts",
    "jobs",
    "availability",
    "credit_grants",
    "credit_transactions",
    "push_notification_deliveries",
    "dispatch_claims",
    "task_queue",
)

# Due tasks waiting longer than this mean the worker is behind or down
TASK_BACKLOG_LAG_SECONDS = 300


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
    """Database reachable and the dispatch tables exist"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

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
                        "error": f"Missing: {', '.join(missing)}"
                    }

                duration = time.time() - start
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

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncTaskBacklogHealthCheck(AsyncHealthCheck):
    """Queued batches and fallback checks are being picked up on time"""

    def __init__(self):
        super().__init__("task_queue", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                        COUNT(*) FILTER (
                            WHERE status = 'pending'
                              AND scheduled_at < now() - make_interval(secs => $1)
                        ) AS overdue,
                        COUNT(*) FILTER (WHERE status = 'failed') AS failed
                    FROM task_queue
                    """,
                    float(TASK_BACKLOG_LAG_SECONDS),
                )

            status = HealthStatus.DEGRADED if row["overdue"] else HealthStatus.HEALTHY
            return {
                "status": status,
                "details": f"{row['overdue']} overdue task(s)" if row["overdue"] else "Task queue draining",
                "pending": row["pending"],
                "overdue": row["overdue"],
                "failed": row["failed"],
            }

        except Exception as exc:
            logger.error("Task queue health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Task queue check failed",
                "error": str(exc)[:200]
            }


class AsyncGatewayConfigHealthCheck(AsyncHealthCheck):
    """Which outbound gateways are configured (no network calls)"""

    def __init__(self):
        super().__init__("gateways", critical=False)

    async def check(self) -> Dict[str, Any]:
        configured = {
            "twilio": settings.twilio_enabled,
            "apns": settings.apns_enabled,
            "fcm": settings.fcm_enabled,
            "distance_matrix": bool(settings.google_maps_api_key),
        }
        status = HealthStatus.HEALTHY if settings.twilio_enabled else HealthStatus.DEGRADED
        return {
            "status": status,
            "details": "SMS gateway configured" if settings.twilio_enabled else "SMS gateway in dev mode",
            "configured": configured,
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self):
        self.checks: list[AsyncHealthCheck] = [
            AsyncDatabaseHealthCheck(),
            AsyncTaskBacklogHealthCheck(),
            AsyncGatewayConfigHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},      # only with include_non_critical
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

        report: Dict[str, Any] = {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time()
        }
        if include_non_critical:
            report["schema"] = await get_schema_info()
        return report


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
