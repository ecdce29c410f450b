# app/core/engine/__init__.py
"""
Core engine -- transport-agnostic session relay logic.

This package contains the domain models, the session state machine,
gateway event parsing and application, and the command services.

Canonical imports:
    from app.core.engine import EventProcessor, SessionService, OutboundDispatcher
    from app.core.engine.domain import Session, SessionStatus, Message
    from app.core.engine.ports import AsyncSessionStore
"""
from app.core.engine.domain import (  # noqa: F401
    Session,
    SessionStatus,
    Conversation,
    Message,
    MessageStatus,
    Direction,
    ContentType,
)
from app.core.engine.ports import (  # noqa: F401
    AsyncSessionStore,
    AsyncConversationStore,
    GatewayPort,
)
from app.core.engine.events import GatewayEvent, parse_event  # noqa: F401
from app.core.engine.event_processor import EventProcessor, EventOutcome, EventResult  # noqa: F401
from app.core.engine.use_cases import SessionService  # noqa: F401
from app.core.engine.outbound import OutboundDispatcher  # noqa: F401
