# app/transport/schemas.py
from datetime import datetime

from pydantic import BaseModel, Field

from app.core.engine.domain import ContentType, Session


class RegisterSessionIn(BaseModel):
    display_name: str = Field(min_length=1, max_length=120)
    session_id: str | None = Field(default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.:-]+$")


class SendMessageIn(BaseModel):
    to: str = Field(min_length=3, max_length=64)
    content_type: ContentType = ContentType.TEXT
    content: str = Field(default="", max_length=4096)
    media_url: str | None = Field(default=None, max_length=2048)


class SessionOut(BaseModel):
    id: str
    tenant_id: str
    display_name: str
    status: str
    phone_number: str | None = None
    qr_code: str | None = None
    qr_expires_at: datetime | None = None
    last_error: str | None = None
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionOut":
        qr_valid = session.has_valid_qr()
        return cls(
            id=session.id,
            tenant_id=session.tenant_id,
            display_name=session.display_name,
            status=session.status.value,
            phone_number=session.phone_number,
            qr_code=session.qr_code if qr_valid else None,
            qr_expires_at=session.qr_expires_at if qr_valid else None,
            last_error=session.last_error,
            connected_at=session.connected_at,
            disconnected_at=session.disconnected_at,
        )


class QrCodeOut(BaseModel):
    session_id: str
    qr_code: str
    qr_expires_at: datetime | None = None


class SendMessageOut(BaseModel):
    external_message_id: str


class EventResultOut(BaseModel):
    event: str | None
    outcome: str
    session_id: str | None = None
    detail: str | None = None


class WebhookOut(BaseModel):
    status: str
    results: list[EventResultOut]
