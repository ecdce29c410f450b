"""
Gateway events: a closed, tagged union discriminated on ``event``.

The gateway posts JSON objects such as::

    {"event": "session.qr_updated", "session_id": "...", "qr_code": "..."}
    {"event": "message.received", "session_id": "...", "message_id": "3EB0...",
     "from": "+5511988887777", "push_name": "Ana", "type": "text", "body": "hi"}

``parse_event`` turns one object into a typed event. Unrecognised tags
raise ``UnknownEvent``; a known tag with an invalid payload raises
``MalformedEvent``. Both are discarded by the processor, never defaulted.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Union, get_args

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from app.core.engine.domain import ContentType, MessageStatus, SessionStatus
from app.core.engine.errors import MalformedEvent, UnknownEvent


class _GatewayEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    session_id: str = Field(min_length=1)

    _raw: dict = PrivateAttr(default_factory=dict)

    @property
    def raw(self) -> dict[str, Any]:
        """The payload exactly as received (for audit metadata)."""
        return self._raw or self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# session.*
# ---------------------------------------------------------------------------

class SessionConnected(_GatewayEvent):
    event: Literal["session.connected"]
    phone_number: str | None = None


class SessionDisconnected(_GatewayEvent):
    event: Literal["session.disconnected"]
    reason: str | None = None


class SessionQrUpdated(_GatewayEvent):
    event: Literal["session.qr_updated"]
    qr_code: str = Field(min_length=1)
    expires_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("expires_at", "qr_expires_at"),
    )


class SessionStatusReported(_GatewayEvent):
    event: Literal["session.status"]
    status: Literal["reconnecting", "banned", "error"]
    reason: str | None = Field(default=None, validation_alias=AliasChoices("reason", "error"))

    @property
    def session_status(self) -> SessionStatus:
        return SessionStatus(self.status)


# ---------------------------------------------------------------------------
# message.*
# ---------------------------------------------------------------------------

class MessageReceived(_GatewayEvent):
    event: Literal["message.received"]
    external_message_id: str | None = Field(
        default=None, validation_alias=AliasChoices("external_message_id", "message_id"),
    )
    sender: str = Field(min_length=1, validation_alias=AliasChoices("from", "sender"))
    contact_name: str | None = Field(
        default=None, validation_alias=AliasChoices("contact_name", "push_name"),
    )
    content_type: ContentType = Field(
        default=ContentType.TEXT, validation_alias=AliasChoices("content_type", "type"),
    )
    content: str = Field(default="", validation_alias=AliasChoices("content", "body"))
    media_url: str | None = None
    timestamp: datetime | None = None

    @field_validator("content_type", mode="before")
    @classmethod
    def _map_content_type(cls, v: Any) -> ContentType:
        if isinstance(v, ContentType):
            return v
        return ContentType.from_gateway(v if isinstance(v, str) else None)

    @field_validator("content", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class _MessageStatusEvent(_GatewayEvent):
    # Status events may arrive without a session id; lookup is then tenant-wide
    session_id: str | None = None
    external_message_id: str = Field(
        min_length=1, validation_alias=AliasChoices("external_message_id", "message_id"),
    )

    target_status: ClassVar[MessageStatus]


class MessageSent(_MessageStatusEvent):
    event: Literal["message.sent"]
    target_status: ClassVar[MessageStatus] = MessageStatus.SENT


class MessageDelivered(_MessageStatusEvent):
    event: Literal["message.delivered"]
    target_status: ClassVar[MessageStatus] = MessageStatus.DELIVERED


class MessageRead(_MessageStatusEvent):
    event: Literal["message.read"]
    target_status: ClassVar[MessageStatus] = MessageStatus.READ


# ---------------------------------------------------------------------------
# Union + parsing
# ---------------------------------------------------------------------------

GatewayEvent = Annotated[
    Union[
        SessionConnected,
        SessionDisconnected,
        SessionQrUpdated,
        SessionStatusReported,
        MessageReceived,
        MessageSent,
        MessageDelivered,
        MessageRead,
    ],
    Field(discriminator="event"),
]

EVENT_CLASSES: tuple[type[_GatewayEvent], ...] = get_args(get_args(GatewayEvent)[0])

EVENT_TYPES: dict[str, type[_GatewayEvent]] = {
    get_args(cls.model_fields["event"].annotation)[0]: cls for cls in EVENT_CLASSES
}

_adapter: TypeAdapter = TypeAdapter(GatewayEvent)


def event_type_of(raw: Any) -> str | None:
    """Best-effort tag of a raw or parsed event, for logging."""
    if isinstance(raw, _GatewayEvent):
        return raw.event  # type: ignore[attr-defined]
    if isinstance(raw, Mapping):
        tag = raw.get("event")
        return tag if isinstance(tag, str) else None
    return None


def parse_event(raw: Any) -> _GatewayEvent:
    """
    Validate one raw event object.

    Raises:
        UnknownEvent: the ``event`` tag is missing or not one we handle
        MalformedEvent: known tag, invalid fields
    """
    if isinstance(raw, _GatewayEvent):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedEvent(None, "event must be a JSON object")

    tag = raw.get("event")
    if not isinstance(tag, str) or tag not in EVENT_TYPES:
        raise UnknownEvent(tag if isinstance(tag, str) else None)

    payload = dict(raw)
    try:
        event = _adapter.validate_python(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'event'}: {err['msg']}"
            for err in exc.errors()
        )
        raise MalformedEvent(tag, problems) from exc

    event._raw = payload
    return event
