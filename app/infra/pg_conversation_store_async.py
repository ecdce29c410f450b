# app/infra/pg_conversation_store_async.py
"""
Async PostgreSQL conversation/message store (asyncpg).

Every write is a single conditional statement, so concurrent writers
cannot lose each other's updates:
  - conversations: INSERT ... ON CONFLICT on (tenant, session, contact)
  - messages:      INSERT ... ON CONFLICT on (tenant, session, external id)
  - status:        UPDATE ... WHERE status_rank < new rank
  - last_message_at only moves forward (GREATEST)
"""
from __future__ import annotations
import json
from datetime import datetime
from typing import Optional

from app.core.engine.domain import (
    ContentType,
    Conversation,
    Direction,
    Message,
    MessageStatus,
    new_id,
)
from app.core.engine.errors import ConversationNotFound, MessageNotFound
from app.core.engine.ports import AsyncConversationStore
from app.infra.db_resilience_async import safe_db_conn
from app.infra.metrics import AppMetrics
from app.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

_CONVERSATION_COLUMNS = (
    "id, tenant_id, session_id, contact_identifier, contact_display_name, last_message_at, created_at"
)
_MESSAGE_COLUMNS = (
    "id, tenant_id, session_id, conversation_id, direction, content_type, content, media_url, "
    "external_message_id, status, metadata::text AS metadata, created_at, status_updated_at"
)


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row['id'],
        tenant_id=row['tenant_id'],
        session_id=row['session_id'],
        contact_identifier=row['contact_identifier'],
        contact_display_name=row['contact_display_name'],
        last_message_at=row['last_message_at'],
        created_at=row['created_at'],
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row['id'],
        tenant_id=row['tenant_id'],
        session_id=row['session_id'],
        conversation_id=row['conversation_id'],
        direction=Direction(row['direction']),
        content_type=ContentType(row['content_type']),
        content=row['content'],
        media_url=row['media_url'],
        external_message_id=row['external_message_id'],
        status=MessageStatus(row['status']),
        metadata=json.loads(row['metadata']) if row['metadata'] else {},
        created_at=row['created_at'],
        status_updated_at=row['status_updated_at'],
    )


def _row_count(result: str | None) -> int:
    # asyncpg execute returns e.g. "UPDATE 1"
    return int(result.split()[-1]) if result else 0


class AsyncPostgresConversationStore(AsyncConversationStore):
    """Tables ``relay_conversations`` and ``relay_messages``."""

    async def find_or_create_conversation(
        self,
        tenant_id: str,
        session_id: str,
        contact_identifier: str,
        defaults: Optional[dict] = None,
    ) -> tuple[Conversation, bool]:
        defaults = defaults or {}
        try:
            async with safe_db_conn() as conn:
                # No-op DO UPDATE so RETURNING also yields the existing row
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO relay_conversations(
                      id, tenant_id, session_id, contact_identifier, contact_display_name, last_message_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (tenant_id, session_id, contact_identifier)
                    DO UPDATE SET contact_identifier = EXCLUDED.contact_identifier
                    RETURNING {_CONVERSATION_COLUMNS}, (xmax = 0) AS inserted
                    """,
                    new_id(), tenant_id, session_id, contact_identifier,
                    defaults.get("contact_display_name"), defaults.get("last_message_at"),
                )
        except Exception:
            logger.error(
                f"Failed to find/create conversation: tenant={tenant_id}, session={session_id}, "
                f"contact={mask_phone(contact_identifier)}",
                exc_info=True,
            )
            AppMetrics.database_error("conversation_find_or_create")
            raise
        return _row_to_conversation(row), bool(row['inserted'])

    async def update_conversation(
        self,
        conversation: Conversation,
        *,
        contact_display_name: Optional[str] = None,
        last_message_at: Optional[datetime] = None,
    ) -> Conversation:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE relay_conversations SET
                      contact_display_name = COALESCE($3, contact_display_name),
                      last_message_at = GREATEST(last_message_at, $4::timestamptz),
                      updated_at = now()
                    WHERE tenant_id = $1 AND id = $2
                    RETURNING {_CONVERSATION_COLUMNS}
                    """,
                    conversation.tenant_id, conversation.id, contact_display_name, last_message_at,
                )
        except Exception:
            logger.error(f"Failed to update conversation {conversation.id}", exc_info=True)
            AppMetrics.database_error("conversation_update")
            raise
        if row is None:
            raise ConversationNotFound(conversation.tenant_id, conversation.id)
        return _row_to_conversation(row)

    async def append_message(self, message: Message) -> tuple[Message, bool]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO relay_messages(
                      id, tenant_id, session_id, conversation_id, direction, content_type,
                      content, media_url, external_message_id, status, status_rank, metadata,
                      created_at, status_updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb,
                            COALESCE($13, now()), COALESCE($14, now()))
                    ON CONFLICT (tenant_id, session_id, external_message_id) DO NOTHING
                    RETURNING {_MESSAGE_COLUMNS}
                    """,
                    message.id, message.tenant_id, message.session_id, message.conversation_id,
                    message.direction.value, message.content_type.value, message.content,
                    message.media_url, message.external_message_id, message.status.value,
                    message.status.rank, json.dumps(message.metadata, default=str),
                    message.created_at, message.status_updated_at,
                )
                if row is not None:
                    return _row_to_message(row), True

                # Re-delivery: hand back what is already stored
                row = await conn.fetchrow(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM relay_messages
                    WHERE tenant_id = $1 AND session_id = $2 AND external_message_id = $3
                    """,
                    message.tenant_id, message.session_id, message.external_message_id,
                )
        except Exception:
            logger.error(
                f"Failed to append message: tenant={message.tenant_id}, "
                f"external_id={message.external_message_id}",
                exc_info=True,
            )
            AppMetrics.database_error("message_append")
            raise
        logger.info(
            f"Message already stored: external_id={message.external_message_id}",
            extra={"tenant_id": message.tenant_id, "session_id": message.session_id},
        )
        return _row_to_message(row), False

    async def update_message_status(
        self,
        tenant_id: str,
        external_message_id: str,
        new_status: MessageStatus,
        session_id: Optional[str] = None,
    ) -> bool:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    UPDATE relay_messages SET
                      status = $3,
                      status_rank = $4,
                      status_updated_at = now()
                    WHERE tenant_id = $1
                      AND external_message_id = $2
                      AND ($5::text IS NULL OR session_id = $5)
                      AND status_rank < $4
                    """,
                    tenant_id, external_message_id, new_status.value, new_status.rank, session_id,
                )
                if _row_count(result) > 0:
                    return True

                exists = await conn.fetchval(
                    """
                    SELECT 1 FROM relay_messages
                    WHERE tenant_id = $1 AND external_message_id = $2
                      AND ($3::text IS NULL OR session_id = $3)
                    LIMIT 1
                    """,
                    tenant_id, external_message_id, session_id,
                )
        except Exception:
            logger.error(
                f"Failed to update message status: tenant={tenant_id}, external_id={external_message_id}",
                exc_info=True,
            )
            AppMetrics.database_error("message_status_update")
            raise
        if not exists:
            raise MessageNotFound(tenant_id, external_message_id)
        return False

    async def get_message(
        self,
        tenant_id: str,
        external_message_id: str,
        session_id: Optional[str] = None,
    ) -> Optional[Message]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM relay_messages
                    WHERE tenant_id = $1 AND external_message_id = $2
                      AND ($3::text IS NULL OR session_id = $3)
                    ORDER BY created_at
                    LIMIT 1
                    """,
                    tenant_id, external_message_id, session_id,
                )
        except Exception:
            logger.error(f"Failed to get message: tenant={tenant_id}, external_id={external_message_id}", exc_info=True)
            AppMetrics.database_error("message_get")
            raise
        return _row_to_message(row) if row else None
