# app/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **gateway** – backend → gateway commands
  (total=``gateway_timeout_seconds``, connect=``gateway_connect_timeout_seconds``,
  pool limit=``gateway_pool_limit``)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Internal state
# ---------------------------------------------------------------------------

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_gateway_session() -> aiohttp.ClientSession:
    """Session for gateway commands (connect, disconnect, send ...)."""
    return _get_or_create(
        "gateway",
        aiohttp.ClientTimeout(
            total=settings.gateway_timeout_seconds,
            connect=settings.gateway_connect_timeout_seconds,
        ),
        limit=settings.gateway_pool_limit,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
