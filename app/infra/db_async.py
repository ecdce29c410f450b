# app/infra/db_async.py
"""
Async database connection pool (asyncpg).
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=60,
        server_settings={
            'application_name': 'session_relay',
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a connection from the pool.

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM relay_sessions WHERE id = $1", session_id)

    Args:
        autocommit: If False, the block runs inside a transaction that commits
            on normal exit and rolls back on exception.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (health checks)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
