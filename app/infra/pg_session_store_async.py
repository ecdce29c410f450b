from __future__ import annotations
from typing import Optional

import asyncpg

from app.core.engine.domain import Session, SessionStatus, new_id
from app.core.engine.errors import ConcurrentUpdate, SessionAlreadyExists, SessionNotFound
from app.core.engine.ports import AsyncSessionStore
from app.infra.db_resilience_async import safe_db_conn
from app.infra.metrics import AppMetrics
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "tenant_id, id, display_name, status, phone_number, qr_code, qr_expires_at, "
    "last_error, connected_at, disconnected_at, version, created_at, updated_at"
)


def _row_to_session(row) -> Session:
    return Session(
        id=row['id'],
        tenant_id=row['tenant_id'],
        display_name=row['display_name'],
        status=SessionStatus(row['status']),
        phone_number=row['phone_number'],
        qr_code=row['qr_code'],
        qr_expires_at=row['qr_expires_at'],
        last_error=row['last_error'],
        connected_at=row['connected_at'],
        disconnected_at=row['disconnected_at'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        version=row['version'],
    )


class AsyncPostgresSessionStore(AsyncSessionStore):
    """asyncpg implementation of the session store (table ``relay_sessions``)."""

    async def get(self, tenant_id: str, session_id: str) -> Optional[Session]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM relay_sessions WHERE tenant_id=$1 AND id=$2",
                    tenant_id, session_id
                )
        except Exception:
            logger.error(f"Failed to get session: tenant={tenant_id}, session={session_id}", exc_info=True)
            AppMetrics.database_error("session_get")
            raise
        return _row_to_session(row) if row else None

    async def create(self, tenant_id: str, display_name: str, session_id: Optional[str] = None) -> Session:
        sid = session_id or new_id()
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO relay_sessions(tenant_id, id, display_name, status)
                    VALUES ($1, $2, $3, $4)
                    RETURNING {_COLUMNS}
                    """,
                    tenant_id, sid, display_name, SessionStatus.DISCONNECTED.value
                )
        except asyncpg.UniqueViolationError:
            raise SessionAlreadyExists(tenant_id, sid) from None
        except Exception:
            logger.error(f"Failed to create session: tenant={tenant_id}, session={sid}", exc_info=True)
            AppMetrics.database_error("session_create")
            raise
        logger.info(f"Session created: tenant={tenant_id}, session={sid}")
        return _row_to_session(row)

    async def save(self, session: Session) -> Session:
        """
        Compare-and-swap on ``version``: the row is written only if nobody
        else wrote it since ``session`` was read.
        """
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE relay_sessions SET
                      display_name = $3,
                      status = $4,
                      phone_number = $5,
                      qr_code = $6,
                      qr_expires_at = $7,
                      last_error = $8,
                      connected_at = $9,
                      disconnected_at = $10,
                      version = version + 1,
                      updated_at = now()
                    WHERE tenant_id = $1 AND id = $2 AND version = $11
                    RETURNING {_COLUMNS}
                    """,
                    session.tenant_id, session.id, session.display_name, session.status.value,
                    session.phone_number, session.qr_code, session.qr_expires_at,
                    session.last_error, session.connected_at, session.disconnected_at,
                    session.version
                )
                if row is None:
                    exists = await conn.fetchval(
                        "SELECT 1 FROM relay_sessions WHERE tenant_id=$1 AND id=$2",
                        session.tenant_id, session.id
                    )
        except Exception:
            logger.error(
                f"Failed to save session: tenant={session.tenant_id}, session={session.id}", exc_info=True
            )
            AppMetrics.database_error("session_save")
            raise

        if row is None:
            if not exists:
                raise SessionNotFound(session.tenant_id, session.id)
            raise ConcurrentUpdate(
                f"Session {session.id} changed since version {session.version}"
            )
        return _row_to_session(row)

    async def list_for_tenant(self, tenant_id: str) -> list[Session]:
        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    f"SELECT {_COLUMNS} FROM relay_sessions WHERE tenant_id=$1 ORDER BY created_at DESC",
                    tenant_id
                )
        except Exception:
            logger.error(f"Failed to list sessions: tenant={tenant_id}", exc_info=True)
            AppMetrics.database_error("session_list")
            raise
        return [_row_to_session(r) for r in rows]
