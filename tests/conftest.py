# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.engine.domain import (  # noqa: E402
    Conversation,
    MessageStatus,
    Session,
    SessionStatus,
    new_id,
)
from app.core.engine.errors import (  # noqa: E402
    ConcurrentUpdate,
    ConversationNotFound,
    MessageNotFound,
    SessionAlreadyExists,
    SessionNotFound,
)
from app.core.engine.state_machine import GatewaySnapshot  # noqa: E402
from app.infra.keyed_lock import KeyedLock  # noqa: E402
from app.transport.gateway_client import ConnectResult, SendResult  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class InMemorySessionStore:
    """Session store with the same compare-and-swap contract as the Postgres one."""

    def __init__(self):
        self.rows: dict[tuple[str, str], Session] = {}
        self.lose_next_saves = 0  # simulate writers in other processes
        self.saves = 0

    async def get(self, tenant_id, session_id):
        row = self.rows.get((tenant_id, session_id))
        return replace(row) if row else None

    async def create(self, tenant_id, display_name, session_id=None):
        sid = session_id or new_id()
        if (tenant_id, sid) in self.rows:
            raise SessionAlreadyExists(tenant_id, sid)
        session = Session(id=sid, tenant_id=tenant_id, display_name=display_name, version=1,
                          created_at=NOW, updated_at=NOW)
        self.rows[(tenant_id, sid)] = session
        return replace(session)

    async def save(self, session):
        key = (session.tenant_id, session.id)
        current = self.rows.get(key)
        if current is None:
            raise SessionNotFound(session.tenant_id, session.id)
        if self.lose_next_saves:
            self.lose_next_saves -= 1
            self.rows[key] = replace(current, version=current.version + 1)
            raise ConcurrentUpdate(f"Session {session.id} changed")
        if current.version != session.version:
            raise ConcurrentUpdate(f"Session {session.id} changed")
        stored = replace(session, version=session.version + 1)
        self.rows[key] = stored
        self.saves += 1
        return replace(stored)

    async def list_for_tenant(self, tenant_id):
        return [replace(s) for (tid, _), s in self.rows.items() if tid == tenant_id]

    def put(self, **fields) -> Session:
        fields.setdefault("display_name", "Support line")
        fields.setdefault("version", 1)
        session = Session(**fields)
        self.rows[(session.tenant_id, session.id)] = session
        return session


class InMemoryConversationStore:
    """Conversation/message store: ON CONFLICT and rank-guard semantics in memory."""

    def __init__(self):
        self.conversations: dict[tuple[str, str, str], Conversation] = {}
        self.messages: list = []

    async def find_or_create_conversation(self, tenant_id, session_id, contact_identifier, defaults=None):
        key = (tenant_id, session_id, contact_identifier)
        if key in self.conversations:
            return replace(self.conversations[key]), False
        defaults = defaults or {}
        conversation = Conversation(
            id=new_id(),
            tenant_id=tenant_id,
            session_id=session_id,
            contact_identifier=contact_identifier,
            contact_display_name=defaults.get("contact_display_name"),
            last_message_at=defaults.get("last_message_at"),
            created_at=NOW,
        )
        self.conversations[key] = conversation
        return replace(conversation), True

    async def update_conversation(self, conversation, *, contact_display_name=None, last_message_at=None):
        for key, stored in self.conversations.items():
            if stored.id == conversation.id and stored.tenant_id == conversation.tenant_id:
                if contact_display_name is not None:
                    stored.contact_display_name = contact_display_name
                if last_message_at is not None:
                    stored.touch(last_message_at)
                return replace(stored)
        raise ConversationNotFound(conversation.tenant_id, conversation.id)

    def _find(self, tenant_id, external_message_id, session_id=None):
        for message in self.messages:
            if (
                message.tenant_id == tenant_id
                and message.external_message_id == external_message_id
                and (session_id is None or message.session_id == session_id)
            ):
                return message
        return None

    async def append_message(self, message):
        if message.external_message_id:
            existing = self._find(message.tenant_id, message.external_message_id, message.session_id)
            if existing is not None:
                return replace(existing), False
        self.messages.append(replace(message))
        return replace(message), True

    async def update_message_status(self, tenant_id, external_message_id, new_status, session_id=None):
        message = self._find(tenant_id, external_message_id, session_id)
        if message is None:
            raise MessageNotFound(tenant_id, external_message_id)
        if message.status.rank >= new_status.rank:
            return False
        message.status = new_status
        return True

    async def get_message(self, tenant_id, external_message_id, session_id=None):
        message = self._find(tenant_id, external_message_id, session_id)
        return replace(message) if message else None

    def conversations_for(self, tenant_id):
        return [c for c in self.conversations.values() if c.tenant_id == tenant_id]


def make_gateway() -> AsyncMock:
    gateway = AsyncMock()
    gateway.register_session.return_value = None
    gateway.connect.return_value = ConnectResult(status=SessionStatus.WAITING_QR)
    gateway.disconnect.return_value = None
    gateway.get_session.return_value = GatewaySnapshot(
        status=SessionStatus.CONNECTED, phone_number="+5511999999999",
    )
    gateway.send_message.return_value = SendResult("wamid.out-1", MessageStatus.SENT)
    gateway.health.return_value = True
    return gateway


@pytest.fixture
def tenant_id():
    """Default tenant ID for tests"""
    return "tenant_01"


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def clock():
    return lambda: NOW
