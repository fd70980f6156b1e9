# app/infra/schema_validator.py
"""
Schema version check run at application start-up.

Migrations are applied out of band (``python -m app.infra.migrate``);
the service only verifies that the newest applied migration is the one
this build expects, and refuses to start otherwise.
"""
from __future__ import annotations
from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

MIGRATE_HINT = "Run migrations first: python -m app.infra.migrate"

_TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name = 'schema_migrations'
    )
"""


async def _applied_versions(conn) -> list[dict] | None:
    """Applied migrations, oldest first. None when the tracking table is missing."""
    if not await conn.fetchval(_TABLE_EXISTS_SQL):
        return None
    rows = await conn.fetch(
        "SELECT version, applied_at FROM schema_migrations ORDER BY applied_at, version"
    )
    return [{"version": r["version"], "applied_at": r["applied_at"]} for r in rows]


async def validate_schema_version() -> dict:
    """
    Check the latest applied migration against ``settings.expected_schema_version``.

    Raises:
        RuntimeError: schema missing or at a different version
    """
    async with db_conn() as conn:
        applied = await _applied_versions(conn)

    if applied is None:
        error = f"Schema migrations table not found. {MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    if not applied:
        error = f"No migrations have been applied. {MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    latest = applied[-1]
    current_version = latest["version"]
    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. {MIGRATE_HINT}"
        )
        logger.critical(
            error,
            extra={"expected": settings.expected_schema_version, "current": current_version},
        )
        raise RuntimeError(error)

    logger.info(
        f"Schema version validated: {current_version}",
        extra={"version": current_version, "applied_at": latest["applied_at"].isoformat()},
    )
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
        "error": None,
    }


async def get_schema_info() -> dict:
    """Schema state for the detailed health report."""
    async with db_conn() as conn:
        applied = await _applied_versions(conn)

    if applied is None:
        return {"initialized": False, "migrations_applied": 0, "latest_version": None}

    latest = applied[-1]["version"] if applied else None
    return {
        "initialized": True,
        "migrations_applied": len(applied),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
