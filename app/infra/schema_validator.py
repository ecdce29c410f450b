# app/infra/schema_validator.py
"""
Schema version validator.

The application does NOT run migrations itself. It checks at startup that
the latest applied migration is the one this build expects, and refuses
to start otherwise (run ``python -m app.infra.migrate`` first).
"""
from __future__ import annotations
from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("relay_sessions", "relay_conversations", "relay_messages")

_MIGRATE_HINT = "Run migrations first: python -m app.infra.migrate"


async def _latest_migration(conn):
    table_exists = await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_schema = 'public'
            AND table_name = 'schema_migrations'
        )
        """
    )
    if not table_exists:
        return None
    return await conn.fetchrow(
        "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
    )


async def validate_schema_version() -> dict:
    """
    Raise RuntimeError unless the schema matches ``settings.expected_schema_version``
    and every relay table exists.
    """
    async with db_conn() as conn:
        latest = await _latest_migration(conn)
        if latest is None:
            error = f"No migrations have been applied. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        current_version = latest['version']
        if current_version != settings.expected_schema_version:
            error = (
                f"Schema version mismatch! Expected: {settings.expected_schema_version}, "
                f"Found: {current_version}. {_MIGRATE_HINT}"
            )
            logger.critical(error)
            raise RuntimeError(error)

        rows = await conn.fetch(
            """
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ANY($1::text[])
            """,
            list(REQUIRED_TABLES),
        )
        missing = sorted(set(REQUIRED_TABLES) - {row['table_name'] for row in rows})
        if missing:
            error = f"Schema {current_version} is missing tables: {', '.join(missing)}"
            logger.critical(error)
            raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
        "error": None,
    }


async def get_schema_info() -> dict:
    """Schema state for the detailed health endpoint."""
    async with db_conn() as conn:
        latest = await _latest_migration(conn)

    if latest is None:
        return {"initialized": False, "latest_version": None,
                "expected_version": settings.expected_schema_version, "is_compatible": False}
    return {
        "initialized": True,
        "latest_version": latest['version'],
        "applied_at": latest['applied_at'].isoformat(),
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest['version'] == settings.expected_schema_version,
    }
