"""
Session lifecycle transitions.

Pure functions: each takes the current ``Session`` and returns a
``Transition`` holding a *new* Session plus whether anything changed.
No I/O happens here; callers persist ``transition.session`` when
``transition.changed`` is true.

    DISCONNECTED --connect--> WAITING_QR --connected--> CONNECTED
         ^                        |                        |
         +------disconnected------+-----reconnecting-------+

BANNED is terminal: nothing moves a session out of it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.engine.domain import Session, SessionStatus
from app.core.engine.errors import InvalidTransition

S = SessionStatus


@dataclass(frozen=True)
class Transition:
    session: Session
    changed: bool

    @property
    def status(self) -> SessionStatus:
        return self.session.status


@dataclass(frozen=True)
class GatewaySnapshot:
    """Session state as reported by the gateway's status endpoint."""
    status: SessionStatus
    phone_number: str | None = None
    qr_code: str | None = None
    qr_expires_at: datetime | None = None
    error: str | None = None


def _unchanged(session: Session) -> Transition:
    return Transition(session, False)


def _move(session: Session, status: SessionStatus, **changes) -> Transition:
    if status != S.WAITING_QR:
        changes["qr_code"] = None
        changes["qr_expires_at"] = None
    return Transition(session.copy(status=status, **changes), True)


def _reject_if_banned(session: Session, trigger: str) -> None:
    if session.status == S.BANNED:
        raise InvalidTransition(
            f"Session {session.id} is banned; {trigger} ignored (register a new session)"
        )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def check_connect(session: Session) -> None:
    """Raise unless a connect command may be issued for this session."""
    _reject_if_banned(session, "connect")
    if session.status in (S.CONNECTED, S.RECONNECTING):
        raise InvalidTransition(f"Session {session.id} is already {session.status.value}")


def begin_connect(
    session: Session,
    now: datetime,
    *,
    qr_code: str | None = None,
    qr_expires_at: datetime | None = None,
    qr_ttl_seconds: int = 60,
) -> Transition:
    """
    Tentatively enter WAITING_QR after the gateway accepted a connect request.

    Events may overtake the command's reply: a session that already reached
    CONNECTED / RECONNECTING stays there.
    """
    _reject_if_banned(session, "connect")
    if session.status in (S.CONNECTED, S.RECONNECTING):
        return _unchanged(session)
    if qr_code:
        return apply_qr_updated(
            session, qr_code, now, qr_ttl_seconds=qr_ttl_seconds, expires_at=qr_expires_at,
        )
    if session.status == S.WAITING_QR:
        return _unchanged(session)
    return _move(session, S.WAITING_QR, last_error=None)


def record_connect_failure(session: Session, error: str) -> Transition:
    """The connect request failed: keep the status, remember why."""
    if session.last_error == error:
        return _unchanged(session)
    return Transition(session.copy(last_error=error), True)


def apply_disconnect_command(session: Session, now: datetime, *, error: str | None = None) -> Transition:
    """
    Operator disconnect. Applied locally even when the gateway request failed,
    so a session is never left looking CONNECTED.
    """
    _reject_if_banned(session, "disconnect")
    if session.status == S.DISCONNECTED:
        return _unchanged(session)
    return _move(session, S.DISCONNECTED, disconnected_at=now, last_error=error)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def apply_qr_updated(
    session: Session,
    qr_code: str,
    now: datetime,
    *,
    qr_ttl_seconds: int = 60,
    expires_at: datetime | None = None,
) -> Transition:
    _reject_if_banned(session, "qr_updated")
    if session.status == S.WAITING_QR and session.qr_code == qr_code:
        return _unchanged(session)
    return _move(
        session,
        S.WAITING_QR,
        qr_code=qr_code,
        qr_expires_at=expires_at or now + timedelta(seconds=qr_ttl_seconds),
        last_error=None,
    )


def apply_connected(session: Session, phone_number: str | None, now: datetime) -> Transition:
    _reject_if_banned(session, "connected")
    phone = phone_number or session.phone_number
    if not phone:
        raise InvalidTransition(f"Session {session.id} reported connected without a phone number")
    if session.status == S.CONNECTED and session.phone_number == phone:
        return _unchanged(session)
    return _move(session, S.CONNECTED, phone_number=phone, connected_at=now, last_error=None)


def apply_disconnected(session: Session, reason: str | None, now: datetime) -> Transition:
    _reject_if_banned(session, "disconnected")
    if session.status == S.DISCONNECTED:
        return _unchanged(session)
    if session.status not in (S.CONNECTED, S.RECONNECTING):
        # A late disconnect from an earlier connection must not abort a new pairing
        raise InvalidTransition(
            f"Session {session.id} is {session.status.value}; disconnected event ignored"
        )
    return _move(session, S.DISCONNECTED, disconnected_at=now, last_error=reason)


def apply_reported_status(
    session: Session,
    status: SessionStatus,
    reason: str | None,
    now: datetime,
) -> Transition:
    """Gateway-reported reconnecting / banned / error."""
    if status == S.BANNED:
        if session.status == S.BANNED:
            return _unchanged(session)
        return _move(session, S.BANNED, last_error=reason or "banned")

    _reject_if_banned(session, f"status={status.value}")

    if status == S.RECONNECTING:
        if session.status == S.RECONNECTING:
            return _unchanged(session)
        if session.status not in (S.WAITING_QR, S.CONNECTED):
            raise InvalidTransition(
                f"Session {session.id} is {session.status.value}; cannot be reconnecting"
            )
        return _move(session, S.RECONNECTING, last_error=None)

    if status == S.ERROR:
        error = reason or "error"
        if session.status == S.ERROR and session.last_error == error:
            return _unchanged(session)
        return _move(session, S.ERROR, last_error=error)

    raise InvalidTransition(f"Status {status.value} cannot be reported as a status event")


def reconcile(session: Session, snapshot: GatewaySnapshot, now: datetime, *, qr_ttl_seconds: int = 60) -> Transition:
    """
    Align the stored session with a fresh gateway snapshot.

    Unlike an event, a snapshot is current by construction, so it may also
    move a session out of WAITING_QR / ERROR into DISCONNECTED.
    """
    target = snapshot.status
    if target == S.CONNECTED:
        return apply_connected(session, snapshot.phone_number, now)
    if target == S.WAITING_QR:
        if snapshot.qr_code:
            return apply_qr_updated(
                session, snapshot.qr_code, now,
                qr_ttl_seconds=qr_ttl_seconds, expires_at=snapshot.qr_expires_at,
            )
        _reject_if_banned(session, "waiting_qr")
        if session.status == S.WAITING_QR:
            return _unchanged(session)
        return _move(session, S.WAITING_QR)
    if target == S.DISCONNECTED:
        _reject_if_banned(session, "disconnected")
        if session.status == S.DISCONNECTED:
            return _unchanged(session)
        return _move(session, S.DISCONNECTED, disconnected_at=now, last_error=snapshot.error)
    if target == S.RECONNECTING:
        _reject_if_banned(session, "reconnecting")
        if session.status == S.RECONNECTING:
            return _unchanged(session)
        return _move(session, S.RECONNECTING, last_error=None)
    return apply_reported_status(session, target, snapshot.error, now)
