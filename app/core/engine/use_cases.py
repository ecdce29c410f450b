# app/core/engine/use_cases.py
from __future__ import annotations

from datetime import datetime
from typing import Callable

from app.config import settings
from app.core.engine import state_machine as sm
from app.core.engine.domain import Session, utcnow
from app.core.engine.errors import GatewayError, QrCodeUnavailable
from app.core.engine.ports import AsyncSessionStore, GatewayPort
from app.core.engine.session_updates import load_session, update_session
from app.infra.audit_log import audit_event
from app.infra.keyed_lock import KeyedLock
from app.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)


class SessionService:
    """
    Application service for operator commands on sessions.
    Workflow: validate locally -> gateway call (no lock held) -> locked local transition.

    Gateway failures never change the session status; connect records the
    failure in ``last_error``, disconnect is applied locally regardless.
    Gateway events that arrive while a command is in flight are serialized
    with it through the shared per-session lock.
    """

    def __init__(
        self,
        *,
        sessions: AsyncSessionStore,
        gateway: GatewayPort,
        locks: KeyedLock | None = None,
        qr_ttl_seconds: int | None = None,
        write_retries: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.gateway = gateway
        self.locks = locks or KeyedLock()
        self.qr_ttl_seconds = qr_ttl_seconds if qr_ttl_seconds is not None else settings.qr_ttl_seconds
        self.write_retries = write_retries if write_retries is not None else settings.session_write_retries
        self.clock = clock

    async def _update(self, tenant_id: str, session_id: str, step) -> sm.Transition:
        async with self.locks.hold((tenant_id, session_id)):
            return await update_session(
                self.sessions, tenant_id, session_id, step, retries=self.write_retries,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_session(self, tenant_id: str, session_id: str) -> Session:
        return await load_session(self.sessions, tenant_id, session_id)

    async def list_sessions(self, tenant_id: str) -> list[Session]:
        return await self.sessions.list_for_tenant(tenant_id)

    async def get_qr_code(self, tenant_id: str, session_id: str) -> Session:
        """The session, if it holds a QR code that has not expired yet."""
        session = await load_session(self.sessions, tenant_id, session_id)
        if not session.has_valid_qr(self.clock()):
            raise QrCodeUnavailable(
                f"No valid QR code for session {session_id} (status={session.status.value})"
            )
        return session

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def register_session(
        self,
        tenant_id: str,
        display_name: str,
        session_id: str | None = None,
    ) -> Session:
        """Create the local record. The gateway learns about it on first connect."""
        session = await self.sessions.create(tenant_id, display_name, session_id)
        audit_event("session.register", tenant_id=tenant_id, session_id=session.id, detail=display_name)
        return session

    async def connect(self, tenant_id: str, session_id: str) -> Session:
        log = LogContext(logger, tenant_id=tenant_id, session_id=session_id)
        session = await load_session(self.sessions, tenant_id, session_id)
        sm.check_connect(session)

        try:
            await self.gateway.register_session(tenant_id, session_id, session.display_name)
            result = await self.gateway.connect(tenant_id, session_id)
        except GatewayError as exc:
            log.warning(f"Connect request failed: {exc.detail}")
            audit_event(
                "session.connect", tenant_id=tenant_id, session_id=session_id,
                outcome="failed", detail=exc.code,
            )
            try:
                await self._update(tenant_id, session_id, lambda s: sm.record_connect_failure(s, exc.detail))
            except Exception:
                log.error("Could not record connect failure", exc_info=True)
            raise

        now = self.clock()
        transition = await self._update(
            tenant_id,
            session_id,
            lambda s: sm.begin_connect(
                s, now,
                qr_code=result.qr_code,
                qr_expires_at=result.qr_expires_at,
                qr_ttl_seconds=self.qr_ttl_seconds,
            ),
        )
        audit_event(
            "session.connect", tenant_id=tenant_id, session_id=session_id,
            detail=f"status={transition.status.value}",
        )
        return transition.session

    async def disconnect(self, tenant_id: str, session_id: str) -> Session:
        log = LogContext(logger, tenant_id=tenant_id, session_id=session_id)
        now = self.clock()
        session = await load_session(self.sessions, tenant_id, session_id)
        if not sm.apply_disconnect_command(session, now).changed:
            return session

        error = None
        try:
            await self.gateway.disconnect(tenant_id, session_id)
        except GatewayError as exc:
            # Best effort: the local state still goes to DISCONNECTED
            log.warning(f"Disconnect request failed, applying locally: {exc.detail}")
            error = f"disconnect request failed: {exc.detail}"

        transition = await self._update(
            tenant_id, session_id, lambda s: sm.apply_disconnect_command(s, now, error=error),
        )
        audit_event(
            "session.disconnect", tenant_id=tenant_id, session_id=session_id,
            outcome="ok" if error is None else "failed", detail=error or "",
        )
        return transition.session

    async def refresh_status(self, tenant_id: str, session_id: str) -> Session:
        """Reconcile the stored session with the gateway's current view of it."""
        await load_session(self.sessions, tenant_id, session_id)
        snapshot = await self.gateway.get_session(tenant_id, session_id)
        now = self.clock()
        transition = await self._update(
            tenant_id,
            session_id,
            lambda s: sm.reconcile(s, snapshot, now, qr_ttl_seconds=self.qr_ttl_seconds),
        )
        if transition.changed:
            audit_event(
                "session.refresh", tenant_id=tenant_id, session_id=session_id,
                detail=f"status={transition.status.value}",
            )
        return transition.session
