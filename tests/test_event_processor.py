# tests/test_event_processor.py
"""Tests for applying gateway events to sessions, conversations and messages"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.core.engine.domain import Direction, MessageStatus, SessionStatus
from app.core.engine.event_processor import EventOutcome, EventProcessor
from app.core.engine.use_cases import SessionService
from conftest import NOW

TENANT = "tenant_01"


def _received(external_id="m1", sender="+5511888", content="hi", session_id="s1", **extra):
    return {
        "event": "message.received",
        "session_id": session_id,
        "external_message_id": external_id,
        "from": sender,
        "content": content,
        **extra,
    }


class TestEventProcessor:
    @pytest.fixture(autouse=True)
    def _setup(self, session_store, conversation_store, locks, clock):
        self.sessions = session_store
        self.conversations = conversation_store
        self.processor = EventProcessor(
            sessions=session_store,
            conversations=conversation_store,
            locks=locks,
            qr_ttl_seconds=60,
            write_retries=3,
            concurrency=8,
            clock=clock,
        )
        self.sessions.put(id="s1", tenant_id=TENANT)

    def session(self, session_id="s1"):
        return self.sessions.rows[(TENANT, session_id)]

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_pairing_scenario(self):
        self.sessions.put(id="s1", tenant_id=TENANT, status=SessionStatus.WAITING_QR)

        r1 = await self.processor.apply(TENANT, {"event": "session.qr_updated", "session_id": "s1", "qr_code": "ABC"})
        assert r1.outcome == EventOutcome.APPLIED
        assert self.session().status == SessionStatus.WAITING_QR
        assert self.session().qr_code == "ABC"
        assert self.session().qr_expires_at == NOW + timedelta(seconds=60)

        r2 = await self.processor.apply(
            TENANT, {"event": "session.connected", "session_id": "s1", "phone_number": "+551199999"},
        )
        assert r2.outcome == EventOutcome.APPLIED
        assert self.session().status == SessionStatus.CONNECTED
        assert self.session().qr_code is None
        assert self.session().phone_number == "+551199999"

    @pytest.mark.asyncio
    async def test_pairing_from_connect_command(self, gateway):
        service = SessionService(
            sessions=self.sessions, gateway=gateway, locks=self.processor.locks,
            qr_ttl_seconds=60, write_retries=3, clock=lambda: NOW,
        )
        assert self.session().status == SessionStatus.DISCONNECTED

        await service.connect(TENANT, "s1")
        assert self.session().status == SessionStatus.WAITING_QR

        r1 = await self.processor.apply(TENANT, {"event": "session.qr_updated", "session_id": "s1", "qr_code": "ABC"})
        assert r1.outcome == EventOutcome.APPLIED
        assert (await service.get_qr_code(TENANT, "s1")).qr_code == "ABC"

        r2 = await self.processor.apply(
            TENANT, {"event": "session.connected", "session_id": "s1", "phone_number": "+551199999"},
        )
        assert r2.outcome == EventOutcome.APPLIED
        session = await service.get_session(TENANT, "s1")
        assert session.status == SessionStatus.CONNECTED
        assert session.phone_number == "+551199999"
        assert session.qr_code is None
        gateway.connect.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tag", [["session.connected"], {"x": 1}])
    async def test_non_string_event_tag_is_discarded(self, tag):
        result = await self.processor.apply(TENANT, {"event": tag, "session_id": "s1"})

        assert result.outcome == EventOutcome.DISCARDED
        assert result.event is None
        assert result.session_id == "s1"
        assert self.session().version == 1

    @pytest.mark.asyncio
    async def test_unexpected_parse_error_is_discarded(self):
        with patch("app.core.engine.event_processor.parse_event", side_effect=TypeError("boom")):
            result = await self.processor.apply(TENANT, {"event": "session.qr_updated", "session_id": "s1"})
        assert result.outcome == EventOutcome.DISCARDED
        assert result.detail == "TypeError"

    @pytest.mark.asyncio
    async def test_repeated_session_event_is_duplicate(self):
        event = {"event": "session.qr_updated", "session_id": "s1", "qr_code": "ABC"}
        await self.processor.apply(TENANT, event)
        before = self.session()

        result = await self.processor.apply(TENANT, event)

        assert result.outcome == EventOutcome.DUPLICATE
        assert self.session() == before

    @pytest.mark.asyncio
    async def test_contradicting_event_is_ignored(self):
        self.sessions.put(id="s1", tenant_id=TENANT, status=SessionStatus.BANNED)
        result = await self.processor.apply(
            TENANT, {"event": "session.connected", "session_id": "s1", "phone_number": "+551199999"},
        )
        assert result.outcome == EventOutcome.IGNORED
        assert self.session().status == SessionStatus.BANNED

    @pytest.mark.asyncio
    async def test_status_report_reconnecting(self):
        self.sessions.put(id="s1", tenant_id=TENANT, status=SessionStatus.CONNECTED, phone_number="+551199999")
        result = await self.processor.apply(
            TENANT, {"event": "session.status", "session_id": "s1", "status": "reconnecting"},
        )
        assert result.outcome == EventOutcome.APPLIED
        assert self.session().status == SessionStatus.RECONNECTING

    @pytest.mark.asyncio
    async def test_unknown_session_is_discarded(self):
        result = await self.processor.apply(
            TENANT, {"event": "session.connected", "session_id": "nope", "phone_number": "+551199999"},
        )
        assert result.outcome == EventOutcome.DISCARDED
        assert result.session_id == "nope"

    @pytest.mark.asyncio
    async def test_lost_write_is_retried(self):
        self.sessions.lose_next_saves = 2
        result = await self.processor.apply(
            TENANT, {"event": "session.qr_updated", "session_id": "s1", "qr_code": "ABC"},
        )
        assert result.outcome == EventOutcome.APPLIED
        assert self.session().qr_code == "ABC"

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_failed(self):
        self.sessions.lose_next_saves = 10
        result = await self.processor.apply(
            TENANT, {"event": "session.qr_updated", "session_id": "s1", "qr_code": "ABC"},
        )
        assert result.outcome == EventOutcome.FAILED

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_received_then_read_scenario(self):
        r1 = await self.processor.apply(TENANT, _received())
        assert r1.outcome == EventOutcome.APPLIED

        assert len(self.conversations.messages) == 1
        message = self.conversations.messages[0]
        assert message.direction == Direction.INBOUND
        assert message.status == MessageStatus.DELIVERED
        assert message.content == "hi"
        assert message.metadata["raw"]["from"] == "+5511888"

        r2 = await self.processor.apply(TENANT, {"event": "message.read", "external_message_id": "m1"})
        assert r2.outcome == EventOutcome.APPLIED
        assert self.conversations.messages[0].status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_same_contact_reuses_conversation(self):
        await self.processor.apply(TENANT, _received("m1"))
        await self.processor.apply(TENANT, _received("m2"))

        conversations = self.conversations.conversations_for(TENANT)
        assert len(conversations) == 1
        assert {m.conversation_id for m in self.conversations.messages} == {conversations[0].id}

    @pytest.mark.asyncio
    async def test_redelivered_message_is_duplicate(self):
        await self.processor.apply(TENANT, _received("m1"))
        before = [m for m in self.conversations.messages]

        result = await self.processor.apply(TENANT, _received("m1"))

        assert result.outcome == EventOutcome.DUPLICATE
        assert self.conversations.messages == before
        assert len(self.conversations.conversations_for(TENANT)) == 1

    @pytest.mark.asyncio
    async def test_contact_name_refresh(self):
        await self.processor.apply(TENANT, _received("m1", contact_name="Ana"))
        await self.processor.apply(TENANT, _received("m2", contact_name="Ana Maria"))
        await self.processor.apply(TENANT, _received("m3"))

        conversation = self.conversations.conversations_for(TENANT)[0]
        assert conversation.contact_display_name == "Ana Maria"

    @pytest.mark.asyncio
    async def test_last_message_at_never_moves_back(self):
        newer = (NOW + timedelta(minutes=5)).isoformat()
        older = (NOW - timedelta(minutes=5)).isoformat()
        await self.processor.apply(TENANT, _received("m1", timestamp=newer))
        await self.processor.apply(TENANT, _received("m2", timestamp=older))

        conversation = self.conversations.conversations_for(TENANT)[0]
        assert conversation.last_message_at == NOW + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_naive_timestamp_is_utc(self):
        await self.processor.apply(TENANT, _received("m1", timestamp="2026-03-01T10:00:00"))
        assert self.conversations.messages[0].created_at.utcoffset() == timedelta(0)

    @pytest.mark.asyncio
    async def test_message_for_unknown_session_is_discarded(self):
        result = await self.processor.apply(TENANT, _received(session_id="ghost"))
        assert result.outcome == EventOutcome.DISCARDED
        assert self.conversations.messages == []
        assert self.conversations.conversations == {}

    @pytest.mark.asyncio
    async def test_status_never_moves_backward(self):
        await self.processor.apply(TENANT, _received("m1"))
        self.conversations.messages[0].status = MessageStatus.SENT

        r1 = await self.processor.apply(TENANT, {"event": "message.delivered", "message_id": "m1"})
        r2 = await self.processor.apply(TENANT, {"event": "message.sent", "message_id": "m1"})

        assert r1.outcome == EventOutcome.APPLIED
        assert r2.outcome == EventOutcome.IGNORED
        assert self.conversations.messages[0].status == MessageStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_repeated_status_is_duplicate(self):
        await self.processor.apply(TENANT, _received("m1"))
        await self.processor.apply(TENANT, {"event": "message.read", "message_id": "m1"})

        result = await self.processor.apply(TENANT, {"event": "message.read", "message_id": "m1"})

        assert result.outcome == EventOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_status_for_unknown_message_is_discarded(self):
        result = await self.processor.apply(TENANT, {"event": "message.read", "message_id": "nope"})
        assert result.outcome == EventOutcome.DISCARDED

    @pytest.mark.asyncio
    async def test_tenants_do_not_see_each_other(self):
        await self.processor.apply(TENANT, _received("m1"))
        result = await self.processor.apply("other_tenant", {"event": "message.read", "message_id": "m1"})
        assert result.outcome == EventOutcome.DISCARDED
        assert self.conversations.messages[0].status == MessageStatus.DELIVERED

    # ------------------------------------------------------------------
    # Bad input and infrastructure errors
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_unknown_event_is_discarded(self):
        result = await self.processor.apply(TENANT, {"event": "presence.update", "session_id": "s1"})
        assert result.outcome == EventOutcome.DISCARDED
        assert result.event == "presence.update"

    @pytest.mark.asyncio
    async def test_malformed_event_is_discarded(self):
        result = await self.processor.apply(TENANT, {"event": "message.received", "session_id": "s1"})
        assert result.outcome == EventOutcome.DISCARDED

    @pytest.mark.asyncio
    async def test_store_failure_is_failed_not_raised(self):
        self.conversations.append_message = AsyncMock(side_effect=ConnectionError("db down"))
        result = await self.processor.apply(TENANT, _received("m1"))
        assert result.outcome == EventOutcome.FAILED
        assert result.detail == "ConnectionError"

    @pytest.mark.asyncio
    async def test_outcome_is_counted(self):
        with patch("app.core.engine.event_processor.AppMetrics") as metrics:
            await self.processor.apply(TENANT, {"event": "presence.update"})
        metrics.event_processed.assert_called_once_with(TENANT, "presence.update", "discarded")


class TestApplyBatch:
    @pytest.fixture(autouse=True)
    def _setup(self, session_store, conversation_store, locks, clock):
        self.sessions = session_store
        self.conversations = conversation_store
        self.locks = locks
        self.processor = EventProcessor(
            sessions=session_store,
            conversations=conversation_store,
            locks=locks,
            qr_ttl_seconds=60,
            write_retries=3,
            concurrency=8,
            clock=clock,
        )
        for sid in ("s1", "s2"):
            self.sessions.put(id=sid, tenant_id=TENANT, status=SessionStatus.WAITING_QR)

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        events = [
            {"event": "session.qr_updated", "session_id": "s1", "qr_code": "A"},
            {"event": "bogus"},
            {"event": "session.qr_updated", "session_id": "s2", "qr_code": "B"},
            {"event": "session.connected", "session_id": "missing", "phone_number": "+1"},
            {"event": "session.connected", "session_id": "s1", "phone_number": "+551199999"},
        ]
        results = await self.processor.apply_batch(TENANT, events)

        assert [r.outcome for r in results] == [
            EventOutcome.APPLIED,
            EventOutcome.DISCARDED,
            EventOutcome.APPLIED,
            EventOutcome.DISCARDED,
            EventOutcome.APPLIED,
        ]
        assert self.sessions.rows[(TENANT, "s1")].status == SessionStatus.CONNECTED
        assert self.sessions.rows[(TENANT, "s2")].qr_code == "B"

    @pytest.mark.asyncio
    async def test_non_string_tag_does_not_abort_batch(self):
        events = [
            {"event": {"x": 1}, "session_id": "s2"},
            {"event": "session.qr_updated", "session_id": "s1", "qr_code": "ABC"},
            {"event": ["session.connected"], "session_id": "s1"},
        ]
        results = await self.processor.apply_batch(TENANT, events)

        assert [r.outcome for r in results] == [
            EventOutcome.DISCARDED,
            EventOutcome.APPLIED,
            EventOutcome.DISCARDED,
        ]
        assert self.sessions.rows[(TENANT, "s1")].qr_code == "ABC"

    @pytest.mark.asyncio
    async def test_arrival_order_within_session(self):
        events = [
            {"event": "session.qr_updated", "session_id": "s1", "qr_code": "A"},
            {"event": "session.connected", "session_id": "s1", "phone_number": "+551199999"},
            {"event": "session.disconnected", "session_id": "s1", "reason": "logout"},
        ]
        results = await self.processor.apply_batch(TENANT, events)

        assert all(r.outcome == EventOutcome.APPLIED for r in results)
        assert self.sessions.rows[(TENANT, "s1")].status == SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_one_session_never_runs_twice_at_once(self):
        active: set[str] = set()
        overlaps = []
        original_get = self.sessions.get

        async def slow_get(tenant_id, session_id):
            if session_id in active:
                overlaps.append(session_id)
            active.add(session_id)
            await asyncio.sleep(0)
            active.discard(session_id)
            return await original_get(tenant_id, session_id)

        self.sessions.get = slow_get
        events = [
            {"event": "session.qr_updated", "session_id": sid, "qr_code": f"Q{i}"}
            for i in range(5) for sid in ("s1", "s2")
        ]
        results = await self.processor.apply_batch(TENANT, events)

        assert overlaps == []
        assert all(r.outcome == EventOutcome.APPLIED for r in results)
        assert self.sessions.rows[(TENANT, "s1")].qr_code == "Q4"

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_events(self):
        self.sessions.put(id="s3", tenant_id=TENANT, status=SessionStatus.CONNECTED, phone_number="+1")
        self.conversations.append_message = AsyncMock(side_effect=ConnectionError("db down"))
        events = [
            _received("m1", session_id="s3"),
            {"event": "session.qr_updated", "session_id": "s1", "qr_code": "A"},
        ]
        results = await self.processor.apply_batch(TENANT, events)

        assert results[0].outcome == EventOutcome.FAILED
        assert results[1].outcome == EventOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await self.processor.apply_batch(TENANT, []) == []

    @pytest.mark.asyncio
    async def test_locks_released(self):
        await self.processor.apply_batch(
            TENANT, [{"event": "session.qr_updated", "session_id": "s1", "qr_code": "A"}],
        )
        assert len(self.locks) == 0
