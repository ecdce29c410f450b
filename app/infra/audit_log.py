# app/infra/audit_log.py
"""
Audit logging for operator commands.

Records session commands (register, connect, disconnect, refresh, send)
to a dedicated audit logger, separate from the application log, with
structured context.

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    tenant_id: str | None = None,
    session_id: str | None = None,
    outcome: str = "ok",
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "session.connect", "message.send")
        tenant_id: Tenant affected
        session_id: Session affected (if applicable)
        outcome: "ok" or "failed"
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "tenant_id": tenant_id or "",
        "session_id": session_id or "",
        "outcome": outcome,
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} tenant={tenant_id or '-'} session={session_id or '-'} "
        f"outcome={outcome} {detail}".rstrip(),
        extra=record,
    )
