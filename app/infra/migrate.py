#!/usr/bin/env python3
# app/infra/migrate.py
"""
Standalone migration runner:

    python -m app.infra.migrate

Run it before deploying a new build (CI/CD step, init container or by
hand).  The service checks the schema version at start-up but never
migrates on its own.
"""
import asyncio
import sys

from app.config import settings
from app.infra.db_async import close_pool, init_pool
from app.infra.logging_config import get_logger, setup_logging
from app.infra.migrations_async import apply_migrations

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Migration runner: env={settings.app_env}, expected={settings.expected_schema_version}")

    await init_pool()
    try:
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for version in result["applied"]:
            logger.info(f"  applied {version}")
    else:
        logger.info("No new migrations to apply")
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
