# app/core/engine/event_processor.py
"""
Applies gateway events to sessions, conversations and messages.

Delivery from the gateway is at-least-once and may be out of order, so:

  - every handler is idempotent (re-applying an event changes nothing),
  - message status only moves forward (queued < sent < delivered < read),
  - events for one session are applied one at a time (per-session lock),
    events for different sessions run in parallel,
  - one bad event never stops the others: ``apply`` never raises.

Outcomes:
    applied    state changed
    duplicate  state already reflected the event
    ignored    event contradicts the current state (InvalidTransition, regression)
    discarded  unknown / malformed event, or its session / message does not exist
    failed     infrastructure error; the transport should re-deliver
"""
from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from app.config import settings
from app.core.engine.domain import Direction, Message, MessageStatus, new_id, utcnow
from app.core.engine.errors import (
    ConcurrentUpdate,
    InvalidTransition,
    MalformedEvent,
    NotFound,
    UnknownEvent,
)
from app.core.engine.events import (
    EVENT_CLASSES,
    MessageDelivered,
    MessageRead,
    MessageReceived,
    MessageSent,
    SessionConnected,
    SessionDisconnected,
    SessionQrUpdated,
    SessionStatusReported,
    event_type_of,
    parse_event,
)
from app.core.engine.ports import AsyncConversationStore, AsyncSessionStore
from app.core.engine.session_updates import load_session, update_session
from app.core.engine import state_machine as sm
from app.infra.keyed_lock import KeyedLock
from app.infra.logging_config import LogContext, get_logger, mask_phone
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DISCARDED = "discarded"
    FAILED = "failed"


@dataclass(frozen=True)
class EventResult:
    event: str | None
    outcome: EventOutcome
    session_id: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "outcome": self.outcome.value,
            "session_id": self.session_id,
            "detail": self.detail,
        }


def _changed(transition: sm.Transition) -> tuple[EventOutcome, str | None]:
    if transition.changed:
        return EventOutcome.APPLIED, f"status={transition.status.value}"
    return EventOutcome.DUPLICATE, f"already {transition.status.value}"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _session_key(raw: Any) -> str | None:
    session_id = raw.get("session_id") if isinstance(raw, Mapping) else getattr(raw, "session_id", None)
    return session_id if isinstance(session_id, str) else None


class EventProcessor:
    def __init__(
        self,
        *,
        sessions: AsyncSessionStore,
        conversations: AsyncConversationStore,
        locks: KeyedLock | None = None,
        qr_ttl_seconds: int | None = None,
        write_retries: int | None = None,
        concurrency: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.conversations = conversations
        self.locks = locks or KeyedLock()
        self.qr_ttl_seconds = qr_ttl_seconds if qr_ttl_seconds is not None else settings.qr_ttl_seconds
        self.write_retries = write_retries if write_retries is not None else settings.session_write_retries
        self.concurrency = concurrency or settings.event_concurrency
        self.clock = clock

        self._handlers = {
            SessionConnected: self._on_connected,
            SessionDisconnected: self._on_disconnected,
            SessionQrUpdated: self._on_qr_updated,
            SessionStatusReported: self._on_status_reported,
            MessageReceived: self._on_message_received,
            MessageSent: self._on_message_status,
            MessageDelivered: self._on_message_status,
            MessageRead: self._on_message_status,
        }
        missing = set(EVENT_CLASSES) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for events: {sorted(c.__name__ for c in missing)}")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def apply(self, tenant_id: str, event: Any) -> EventResult:
        """Apply one event (raw mapping or parsed). Never raises."""
        tag = event_type_of(event)
        try:
            parsed = parse_event(event)
        except (UnknownEvent, MalformedEvent) as exc:
            logger.warning(f"Discarding event: {exc.detail}", extra={"tenant_id": tenant_id})
            AppMetrics.event_processed(tenant_id, tag or "unknown", EventOutcome.DISCARDED.value)
            return EventResult(tag, EventOutcome.DISCARDED, _session_key(event), exc.detail)
        except Exception as exc:
            logger.error(
                f"Discarding unparseable event: {type(exc).__name__}: {exc}",
                exc_info=True, extra={"tenant_id": tenant_id},
            )
            AppMetrics.event_processed(tenant_id, tag or "unknown", EventOutcome.DISCARDED.value)
            return EventResult(tag, EventOutcome.DISCARDED, _session_key(event), type(exc).__name__)

        session_id = parsed.session_id
        log = LogContext(
            logger,
            tenant_id=tenant_id,
            session_id=session_id,
            external_message_id=getattr(parsed, "external_message_id", None),
        )
        handler = self._handlers[type(parsed)]

        try:
            if session_id:
                async with self.locks.hold((tenant_id, session_id)):
                    outcome, detail = await handler(tenant_id, parsed)
            else:
                outcome, detail = await handler(tenant_id, parsed)
        except NotFound as exc:
            log.warning(f"{tag} discarded: {exc.detail}")
            outcome, detail = EventOutcome.DISCARDED, exc.detail
        except InvalidTransition as exc:
            log.warning(f"{tag} ignored: {exc.detail}")
            outcome, detail = EventOutcome.IGNORED, exc.detail
        except ConcurrentUpdate as exc:
            log.error(f"{tag} failed: {exc.detail}")
            outcome, detail = EventOutcome.FAILED, exc.detail
        except Exception as exc:
            log.error(f"{tag} failed: {type(exc).__name__}: {exc}", exc_info=True)
            outcome, detail = EventOutcome.FAILED, type(exc).__name__
        else:
            if outcome == EventOutcome.DUPLICATE:
                log.info(f"{tag} duplicate: {detail}")
            else:
                log.debug(f"{tag} {outcome.value}: {detail}")

        AppMetrics.event_processed(tenant_id, tag or "unknown", outcome.value)
        return EventResult(tag, outcome, session_id, detail)

    async def apply_batch(self, tenant_id: str, events: Sequence[Any]) -> list[EventResult]:
        """
        Apply a batch: arrival order within a session, sessions in parallel.

        Results are returned in input order.
        """
        results: list[EventResult | None] = [None] * len(events)
        groups: dict[str | None, list[int]] = {}
        for index, raw in enumerate(events):
            groups.setdefault(_session_key(raw), []).append(index)

        gate = asyncio.Semaphore(self.concurrency)

        async def run_group(indices: list[int]) -> None:
            async with gate:
                for i in indices:
                    results[i] = await self.apply(tenant_id, events[i])

        await asyncio.gather(*(run_group(indices) for indices in groups.values()))
        return results  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # session.*
    # ------------------------------------------------------------------

    async def _transition(self, tenant_id: str, session_id: str, step) -> tuple[EventOutcome, str | None]:
        transition = await update_session(
            self.sessions, tenant_id, session_id, step, retries=self.write_retries,
        )
        return _changed(transition)

    async def _on_connected(self, tenant_id: str, ev: SessionConnected):
        now = self.clock()
        return await self._transition(
            tenant_id, ev.session_id, lambda s: sm.apply_connected(s, ev.phone_number, now),
        )

    async def _on_disconnected(self, tenant_id: str, ev: SessionDisconnected):
        now = self.clock()
        return await self._transition(
            tenant_id, ev.session_id, lambda s: sm.apply_disconnected(s, ev.reason, now),
        )

    async def _on_qr_updated(self, tenant_id: str, ev: SessionQrUpdated):
        now = self.clock()
        return await self._transition(
            tenant_id,
            ev.session_id,
            lambda s: sm.apply_qr_updated(
                s, ev.qr_code, now, qr_ttl_seconds=self.qr_ttl_seconds, expires_at=ev.expires_at,
            ),
        )

    async def _on_status_reported(self, tenant_id: str, ev: SessionStatusReported):
        now = self.clock()
        return await self._transition(
            tenant_id,
            ev.session_id,
            lambda s: sm.apply_reported_status(s, ev.session_status, ev.reason, now),
        )

    # ------------------------------------------------------------------
    # message.*
    # ------------------------------------------------------------------

    async def _on_message_received(self, tenant_id: str, ev: MessageReceived):
        await load_session(self.sessions, tenant_id, ev.session_id)
        now = self.clock()
        at = _aware(ev.timestamp) if ev.timestamp else now

        conversation, created = await self.conversations.find_or_create_conversation(
            tenant_id,
            ev.session_id,
            ev.sender,
            {"contact_display_name": ev.contact_name or None},
        )
        if created:
            AppMetrics.conversation_created(tenant_id)
            logger.info(
                f"New conversation {conversation.id} with {mask_phone(ev.sender)}",
                extra={"tenant_id": tenant_id, "session_id": ev.session_id},
            )

        message = Message(
            id=new_id(),
            tenant_id=tenant_id,
            session_id=ev.session_id,
            conversation_id=conversation.id,
            direction=Direction.INBOUND,
            content_type=ev.content_type,
            content=ev.content,
            media_url=ev.media_url,
            external_message_id=ev.external_message_id,
            status=MessageStatus.DELIVERED,
            metadata={"raw": ev.raw},
            created_at=at,
            status_updated_at=now,
        )
        if not message.is_routable:
            logger.warning(
                "Inbound message without external id: stored, but no status event can reach it",
                extra={"tenant_id": tenant_id, "session_id": ev.session_id},
            )
        stored, inserted = await self.conversations.append_message(message)

        # Runs on re-delivery too, so a half-applied earlier attempt gets completed
        new_name = ev.contact_name if ev.contact_name and ev.contact_name != conversation.contact_display_name else None
        moved = conversation.touch(at)
        if new_name or moved:
            await self.conversations.update_conversation(
                conversation,
                contact_display_name=new_name,
                last_message_at=conversation.last_message_at if moved else None,
            )

        if not inserted:
            return EventOutcome.DUPLICATE, f"message {stored.external_message_id} already stored"
        AppMetrics.message_stored(tenant_id, Direction.INBOUND.value)
        return EventOutcome.APPLIED, f"message {stored.id}"

    async def _on_message_status(self, tenant_id: str, ev):
        target: MessageStatus = ev.target_status
        advanced = await self.conversations.update_message_status(
            tenant_id, ev.external_message_id, target, session_id=ev.session_id,
        )
        if advanced:
            return EventOutcome.APPLIED, f"status={target.value}"

        current = await self.conversations.get_message(
            tenant_id, ev.external_message_id, session_id=ev.session_id,
        )
        if current is not None and current.status == target:
            return EventOutcome.DUPLICATE, f"already {target.value}"

        AppMetrics.status_regression_ignored(tenant_id)
        stored = current.status.value if current else "unknown"
        logger.warning(
            f"Ignoring status regression {stored} -> {target.value} "
            f"for message {ev.external_message_id}",
            extra={"tenant_id": tenant_id, "external_message_id": ev.external_message_id},
        )
        return EventOutcome.IGNORED, f"status {stored} is ahead of {target.value}"
