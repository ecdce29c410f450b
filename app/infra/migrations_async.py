# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).

Files under app/infra/sql are applied in name order (001_init.sql,
002_..., ...) inside one transaction. A transaction-scoped advisory lock
keeps two runners (e.g. two deploy jobs) from applying the same file twice.
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Arbitrary constant shared by every runner of this schema
_MIGRATION_LOCK_KEY = 72_410_001


def _sql_dir() -> Path:
    """Get SQL migrations directory path (next to this file: app/infra/sql)."""
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def _ensure_table(conn) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
          version text PRIMARY KEY,
          applied_at timestamptz NOT NULL DEFAULT now()
        )
        """
    )


async def pending_migrations() -> list[str]:
    """Names of migration files not applied yet."""
    async with db_conn() as conn:
        await _ensure_table(conn)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
    applied = {row['version'] for row in rows}
    return [p.name for p in migration_files() if p.name not in applied]


async def apply_migrations() -> dict:
    """
    Apply pending SQL migrations.

    Returns:
        dict with keys:
            - ok: bool (True if successful)
            - applied: list[str] (migration filenames applied in this run)
            - count: int (number of migrations applied)
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_KEY)
        await _ensure_table(conn)

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)
            applied_now.append(version)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
