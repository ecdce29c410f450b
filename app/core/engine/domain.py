from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Dict
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class SessionStatus(str, Enum):
    """Lifecycle state of one tenant's connection to the messaging network."""
    DISCONNECTED = "disconnected"
    WAITING_QR = "waiting_qr"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    BANNED = "banned"
    ERROR = "error"

    @classmethod
    def from_gateway(cls, raw: str | None) -> "SessionStatus":
        """Map the gateway's status vocabulary onto ours."""
        value = (raw or "").strip().lower()
        if value in ("connected", "open"):
            return cls.CONNECTED
        if value in ("qr", "waiting_qr"):
            return cls.WAITING_QR
        if value == "reconnecting":
            return cls.RECONNECTING
        if value == "banned":
            return cls.BANNED
        if value == "error":
            return cls.ERROR
        return cls.DISCONNECTED


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"

    @classmethod
    def from_gateway(cls, raw: str | None) -> "ContentType":
        """
        Map gateway message type tags (``image``, ``imageMessage``, ``ptt`` ...)
        onto the closed content type set. Unrecognised tags are TEXT.
        """
        value = (raw or "").strip()
        if value.endswith("Message"):
            value = value[: -len("Message")]
        value = value.lower()
        if value in ("ptt", "voice"):
            return cls.AUDIO
        if value == "livelocation":
            return cls.LOCATION
        try:
            return cls(value)
        except ValueError:
            return cls.TEXT


class MessageStatus(str, Enum):
    """Delivery status; only ever moves forward (queued < sent < delivered < read)."""
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class Session:
    """
    One tenant's connection to the messaging network.

    Invariants:
      - ``phone_number`` is set iff the session has reached CONNECTED at least once.
      - ``qr_code`` / ``qr_expires_at`` are set only while WAITING_QR.
      - ``version`` increases by one on every persisted write (compare-and-swap key).
    """
    id: str
    tenant_id: str
    display_name: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    phone_number: Optional[str] = None
    qr_code: Optional[str] = None
    qr_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def copy(self, **changes: Any) -> "Session":
        return replace(self, **changes)

    def has_valid_qr(self, now: datetime | None = None) -> bool:
        if self.status != SessionStatus.WAITING_QR or not self.qr_code:
            return False
        if self.qr_expires_at is None:
            return True
        return self.qr_expires_at > (now or utcnow())


@dataclass
class Conversation:
    """Messages exchanged with one external contact within one session."""
    id: str
    tenant_id: str
    session_id: str
    contact_identifier: str
    contact_display_name: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def touch(self, at: datetime) -> bool:
        """Advance ``last_message_at``; never moves it backwards."""
        if self.last_message_at is None or at > self.last_message_at:
            self.last_message_at = at
            return True
        return False


@dataclass
class Message:
    id: str
    tenant_id: str
    session_id: str
    conversation_id: str
    direction: Direction
    content_type: ContentType = ContentType.TEXT
    content: str = ""
    media_url: Optional[str] = None
    external_message_id: Optional[str] = None
    status: MessageStatus = MessageStatus.QUEUED
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None

    @property
    def is_routable(self) -> bool:
        """Only messages with a network id can receive status events."""
        return bool(self.external_message_id)