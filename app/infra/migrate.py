#!/usr/bin/env python3
# app/infra/migrate.py
"""
Standalone migration runner.

Run migrations separately from application startup:
    python -m app.infra.migrate            # apply pending migrations
    python -m app.infra.migrate --status   # list pending migrations only

The application validates the schema version at startup but never
runs migrations itself.
"""
import argparse
import asyncio
import sys

from app.infra.migrations_async import apply_migrations, pending_migrations
from app.infra.db_async import init_pool, close_pool
from app.infra.logging_config import setup_logging, get_logger
from app.config import settings

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def main(status_only: bool = False) -> int:
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    await init_pool()
    try:
        if status_only:
            pending = await pending_migrations()
            if pending:
                for name in pending:
                    logger.info(f"  pending: {name}")
            else:
                logger.info("Schema is up to date")
            return 0

        result = await apply_migrations()
        for migration in result['applied']:
            logger.info(f"  ✓ {migration}")
        if not result['applied']:
            logger.info("No new migrations to apply")
        return 0 if result['ok'] else 1

    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Apply database migrations")
    parser.add_argument("--status", action="store_true", help="only list pending migrations")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(status_only=args.status)))
