# app/core/engine/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Protocol, Optional

from app.core.engine.domain import Session, Conversation, Message, MessageStatus, ContentType


# ============================================================================
# ASYNC PROTOCOLS (asyncpg based in production, in-memory fakes in tests)
# ============================================================================

class AsyncSessionStore(Protocol):
    async def get(self, tenant_id: str, session_id: str) -> Optional[Session]: ...

    async def create(self, tenant_id: str, display_name: str, session_id: Optional[str] = None) -> Session: ...

    async def save(self, session: Session) -> Session:
        """
        Persist ``session`` if the stored version still equals ``session.version``.

        Returns the stored row (version + 1).
        Raises ConcurrentUpdate when another writer got there first.
        """
        ...

    async def list_for_tenant(self, tenant_id: str) -> list[Session]: ...


class AsyncConversationStore(Protocol):
    async def find_or_create_conversation(
        self,
        tenant_id: str,
        session_id: str,
        contact_identifier: str,
        defaults: Optional[dict] = None,
    ) -> tuple[Conversation, bool]:
        """Returns (conversation, created). Exactly one row per (tenant, session, contact)."""
        ...

    async def update_conversation(
        self,
        conversation: Conversation,
        *,
        contact_display_name: Optional[str] = None,
        last_message_at: Optional[datetime] = None,
    ) -> Conversation: ...

    async def append_message(self, message: Message) -> tuple[Message, bool]:
        """
        Returns (stored, created). A message whose external id is already
        stored for the same tenant/session returns the existing row.
        """
        ...

    async def update_message_status(
        self,
        tenant_id: str,
        external_message_id: str,
        new_status: MessageStatus,
        session_id: Optional[str] = None,
    ) -> bool:
        """
        True  => status advanced
        False => status already at or beyond ``new_status`` (no-op)
        Raises MessageNotFound when no message carries that external id.
        """
        ...

    async def get_message(
        self,
        tenant_id: str,
        external_message_id: str,
        session_id: Optional[str] = None,
    ) -> Optional[Message]: ...


class GatewayPort(Protocol):
    async def register_session(self, tenant_id: str, session_id: str, display_name: str) -> None: ...

    async def connect(self, tenant_id: str, session_id: str): ...

    async def disconnect(self, tenant_id: str, session_id: str) -> None: ...

    async def get_session(self, tenant_id: str, session_id: str): ...

    async def send_message(
        self,
        tenant_id: str,
        session_id: str,
        to: str,
        content_type: ContentType,
        content: str,
        media_url: Optional[str] = None,
    ): ...
