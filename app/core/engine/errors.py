"""
Typed errors for session lifecycle, event application and outbound sends.

Each error carries a stable ``code`` and the HTTP status the transport
layer answers with, so route handlers map them without business logic.

Policy:
    - Event application catches every ``RelayError`` per event
      (logged, discarded) and never lets one stop the stream.
    - Commands (connect / disconnect / send) let them propagate
      to the issuing caller.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

class NotFound(RelayError):
    status_code = 404
    code = "not_found"


class SessionNotFound(NotFound):
    def __init__(self, tenant_id: str, session_id: str):
        self.tenant_id = tenant_id
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found for tenant {tenant_id}")


class MessageNotFound(NotFound):
    def __init__(self, tenant_id: str, external_message_id: str):
        self.tenant_id = tenant_id
        self.external_message_id = external_message_id
        super().__init__(f"No message with external id {external_message_id} for tenant {tenant_id}")


class ConversationNotFound(NotFound):
    def __init__(self, tenant_id: str, conversation_id: str):
        self.tenant_id = tenant_id
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found for tenant {tenant_id}")


class QrCodeUnavailable(NotFound):
    code = "no_qr"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class InvalidTransition(RelayError):
    """Command or event contradicts the session / message invariants."""

    status_code = 409
    code = "invalid_transition"


class SessionAlreadyExists(RelayError):
    status_code = 409
    code = "session_exists"

    def __init__(self, tenant_id: str, session_id: str):
        self.tenant_id = tenant_id
        self.session_id = session_id
        super().__init__(f"Session {session_id} already exists for tenant {tenant_id}")


class SessionNotConnected(RelayError):
    status_code = 409
    code = "session_not_connected"

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is {status}, not connected")


class ConcurrentUpdate(RelayError):
    """A conditional write lost against a concurrent writer."""

    status_code = 409
    code = "concurrent_update"


class MessageNotRecorded(RelayError):
    """The gateway accepted a send but storing the message failed."""

    status_code = 500
    code = "sent_not_recorded"

    def __init__(self, session_id: str, external_message_id: str, reason: str):
        self.session_id = session_id
        self.external_message_id = external_message_id
        super().__init__(
            f"Message {external_message_id} was sent on session {session_id} "
            f"but could not be stored: {reason}"
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class UnknownEvent(RelayError):
    status_code = 422
    code = "unknown_event"

    def __init__(self, event_type: str | None):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type!r}")


class MalformedEvent(RelayError):
    status_code = 422
    code = "malformed_event"

    def __init__(self, event_type: str | None, detail: str):
        self.event_type = event_type
        super().__init__(f"Malformed {event_type or 'event'}: {detail}")


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class GatewayError(RelayError):
    """Failure talking to the gateway. Never mutates session status."""

    status_code = 502
    code = "gateway_error"

    def __init__(self, operation: str, detail: str, *, http_status: int = 0):
        self.operation = operation
        self.http_status = http_status
        super().__init__(f"Gateway {operation} failed: {detail}")


class GatewayUnavailable(GatewayError):
    """Network error, timeout, 5xx or undecodable response."""

    status_code = 503
    code = "gateway_unavailable"


class BudgetExhausted(GatewayError):
    """An upstream resource limit (credits, quota, rate) was hit."""

    status_code = 402
    code = "budget_exhausted"

    def __init__(self, operation: str, detail: str, *, http_status: int = 0, retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(operation, detail, http_status=http_status)


class GatewayRejected(GatewayError):
    """The gateway understood the request and refused it."""

    status_code = 502
    code = "gateway_rejected"
