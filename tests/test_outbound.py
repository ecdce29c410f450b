# tests/test_outbound.py
"""Tests for the outbound dispatcher"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.engine.domain import ContentType, Direction, MessageStatus, SessionStatus
from app.core.engine.errors import (
    BudgetExhausted,
    GatewayRejected,
    GatewayUnavailable,
    MessageNotRecorded,
    SessionNotConnected,
    SessionNotFound,
)
from app.core.engine.outbound import OutboundDispatcher
from app.transport.gateway_client import SendResult
from conftest import NOW

TENANT = "tenant_01"


class TestOutboundDispatcher:
    @pytest.fixture(autouse=True)
    def _setup(self, session_store, conversation_store, gateway, clock):
        self.sessions = session_store
        self.conversations = conversation_store
        self.gateway = gateway
        self.dispatcher = OutboundDispatcher(
            sessions=session_store,
            conversations=conversation_store,
            gateway=gateway,
            clock=clock,
        )
        self.sessions.put(id="s1", tenant_id=TENANT, status=SessionStatus.CONNECTED, phone_number="+551199999")

    @pytest.mark.asyncio
    async def test_send_stores_outbound_message(self):
        external_id = await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "hello")

        assert external_id == "wamid.out-1"
        self.gateway.send_message.assert_awaited_once_with(
            TENANT, "s1", "+5511888", ContentType.TEXT, "hello", None,
        )
        [message] = self.conversations.messages
        assert message.direction == Direction.OUTBOUND
        assert message.status == MessageStatus.SENT
        assert message.external_message_id == "wamid.out-1"

        [conversation] = self.conversations.conversations_for(TENANT)
        assert conversation.contact_identifier == "+5511888"
        assert conversation.last_message_at == NOW

    @pytest.mark.asyncio
    async def test_send_reuses_conversation(self):
        self.gateway.send_message.side_effect = [
            SendResult("wamid.1", MessageStatus.SENT),
            SendResult("wamid.2", MessageStatus.SENT),
        ]
        await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "one")
        await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "two")

        assert len(self.conversations.conversations_for(TENANT)) == 1
        assert len(self.conversations.messages) == 2

    @pytest.mark.asyncio
    async def test_queued_by_gateway(self):
        self.gateway.send_message.return_value = SendResult("wamid.q", MessageStatus.QUEUED)
        await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.IMAGE, "", "https://cdn.example/a.jpg")

        [message] = self.conversations.messages
        assert message.status == MessageStatus.QUEUED
        assert message.media_url == "https://cdn.example/a.jpg"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        SessionStatus.DISCONNECTED,
        SessionStatus.WAITING_QR,
        SessionStatus.RECONNECTING,
        SessionStatus.BANNED,
        SessionStatus.ERROR,
    ])
    async def test_not_connected_makes_no_gateway_call(self, status):
        self.sessions.put(id="s1", tenant_id=TENANT, status=status)

        with pytest.raises(SessionNotConnected):
            await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "hello")

        self.gateway.send_message.assert_not_called()
        assert self.conversations.messages == []

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        with pytest.raises(SessionNotFound):
            await self.dispatcher.send(TENANT, "nope", "+5511888", ContentType.TEXT, "hello")
        self.gateway.send_message.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        GatewayUnavailable("send_message", "timed out"),
        BudgetExhausted("send_message", "HTTP 429: slow down", http_status=429, retry_after=30),
        GatewayRejected("send_message", "HTTP 400: invalid number", http_status=400),
    ])
    async def test_gateway_failure_stores_nothing(self, error):
        self.gateway.send_message.side_effect = error

        with pytest.raises(type(error)):
            await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "hello")

        assert self.conversations.messages == []
        assert self.sessions.rows[(TENANT, "s1")].status == SessionStatus.CONNECTED
        assert self.gateway.send_message.await_count == 1

    @pytest.mark.asyncio
    async def test_sent_but_not_stored_reports_external_id(self):
        self.conversations.append_message = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(MessageNotRecorded) as exc_info:
            await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "hello")

        assert exc_info.value.external_message_id == "wamid.out-1"
        assert "wamid.out-1" in exc_info.value.detail
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert self.gateway.send_message.await_count == 1

    @pytest.mark.asyncio
    async def test_last_message_at_not_moved_back(self):
        conversation, _ = await self.conversations.find_or_create_conversation(
            TENANT, "s1", "+5511888", {"last_message_at": NOW + timedelta(hours=1)},
        )
        await self.dispatcher.send(TENANT, "s1", "+5511888", ContentType.TEXT, "hello")

        [stored] = self.conversations.conversations_for(TENANT)
        assert stored.last_message_at == NOW + timedelta(hours=1)
