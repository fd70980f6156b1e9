# app/infra/migrations_async.py
"""
Applies the plain SQL files in ``app/infra/sql`` in filename order.
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"


def list_migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


async def apply_migrations(sql_dir: Path = SQL_DIR) -> dict:
    """
    Apply every migration not yet recorded in ``schema_migrations``.

    All pending files run in one transaction: either the whole set lands
    or none of it does.

    Returns:
        {"ok": True, "applied": [filenames], "count": int}
    """
    files = list_migration_files(sql_dir)

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )
        done = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}

        applied_now = []
        for path in files:
            if path.name in done:
                logger.debug(f"Migration {path.name} already applied, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
