# app/infra/db_resilience_async.py
"""
Retry-on-transient-error wrapper around db_conn().

Only connection acquisition is retried. A statement that already ran is
never replayed here; callers own that decision.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager

import asyncpg
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "server closed",
    "too many connections",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """True for errors where a fresh connection may succeed."""
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True
    if isinstance(exc, asyncpg.PostgresError):
        # Server-side statement errors are never transient by message
        return False
    message = str(exc).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3):
    """
    Like db_conn(), but retries acquiring the connection on transient errors.

    Errors raised by the caller's block propagate unchanged.
    """
    delay = 0.1
    attempt = 0

    while True:
        try:
            cm = db_conn(autocommit=autocommit)
            conn = await cm.__aenter__()
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise
            attempt += 1
            logger.warning(
                f"Transient error getting connection (attempt {attempt}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)
            continue
        break

    try:
        yield conn
    except BaseException as exc:
        if not await cm.__aexit__(type(exc), exc, exc.__traceback__):
            raise
    else:
        await cm.__aexit__(None, None, None)
