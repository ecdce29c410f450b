# app/core/engine/outbound.py
"""
Outbound message dispatch.

    send() -> session must be CONNECTED -> gateway send (no lock held)
           -> store OUTBOUND message under the returned external id

No automatic retry: a timed-out or refused send raises, nothing is stored,
and the session is left as it was. Resubmitting is the caller's decision
and produces a new external message id.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from app.core.engine.domain import (
    ContentType,
    Direction,
    Message,
    SessionStatus,
    new_id,
    utcnow,
)
from app.core.engine.errors import GatewayError, MessageNotRecorded, SessionNotConnected
from app.core.engine.ports import AsyncConversationStore, AsyncSessionStore, GatewayPort
from app.core.engine.session_updates import load_session
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


class OutboundDispatcher:
    def __init__(
        self,
        *,
        sessions: AsyncSessionStore,
        conversations: AsyncConversationStore,
        gateway: GatewayPort,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.conversations = conversations
        self.gateway = gateway
        self.clock = clock

    async def send(
        self,
        tenant_id: str,
        session_id: str,
        to: str,
        content_type: ContentType,
        content: str,
        media_url: str | None = None,
    ) -> str:
        """
        Send one message through the gateway and record it.

        Returns:
            The external message id assigned by the network.

        Raises:
            SessionNotFound: unknown session
            SessionNotConnected: session is not CONNECTED (no gateway call made)
            GatewayUnavailable / BudgetExhausted / GatewayRejected: gateway failure
            MessageNotRecorded: the gateway accepted the message but storing it failed
        """
        session = await load_session(self.sessions, tenant_id, session_id)
        if session.status != SessionStatus.CONNECTED:
            raise SessionNotConnected(session_id, session.status.value)

        try:
            result = await self.gateway.send_message(
                tenant_id, session_id, to, content_type, content, media_url,
            )
        except GatewayError as exc:
            audit_event(
                "message.send", tenant_id=tenant_id, session_id=session_id,
                outcome="failed", detail=exc.code, extra={"to": mask_phone(to)},
            )
            raise

        now = self.clock()
        try:
            message = await self._record(tenant_id, session_id, to, content_type, content, media_url, result, now)
        except Exception as exc:
            logger.error(
                f"Message sent but not stored: {type(exc).__name__}: {exc}",
                exc_info=True,
                extra={
                    "tenant_id": tenant_id,
                    "session_id": session_id,
                    "external_message_id": result.external_message_id,
                },
            )
            audit_event(
                "message.send", tenant_id=tenant_id, session_id=session_id, outcome="failed",
                detail=f"external_id={result.external_message_id} not stored", extra={"to": mask_phone(to)},
            )
            raise MessageNotRecorded(session_id, result.external_message_id, type(exc).__name__) from exc

        AppMetrics.message_stored(tenant_id, Direction.OUTBOUND.value)
        audit_event(
            "message.send", tenant_id=tenant_id, session_id=session_id,
            detail=f"external_id={result.external_message_id}", extra={"to": mask_phone(to)},
        )
        logger.info(
            f"Message {message.id} sent to {mask_phone(to)} as {result.status.value}",
            extra={
                "tenant_id": tenant_id,
                "session_id": session_id,
                "external_message_id": result.external_message_id,
            },
        )
        return result.external_message_id

    async def _record(self, tenant_id, session_id, to, content_type, content, media_url, result, now) -> Message:
        conversation, created = await self.conversations.find_or_create_conversation(
            tenant_id, session_id, to, None,
        )
        if created:
            AppMetrics.conversation_created(tenant_id)

        message = Message(
            id=new_id(),
            tenant_id=tenant_id,
            session_id=session_id,
            conversation_id=conversation.id,
            direction=Direction.OUTBOUND,
            content_type=content_type,
            content=content,
            media_url=media_url,
            external_message_id=result.external_message_id,
            status=result.status,
            created_at=now,
            status_updated_at=now,
        )
        await self.conversations.append_message(message)
        if conversation.touch(now):
            await self.conversations.update_conversation(conversation, last_message_at=now)
        return message
