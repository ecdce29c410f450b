# app/core/engine/session_updates.py
"""
Read-modify-write of one Session with compare-and-swap retry.

Callers hold the in-process session lock around this; the store's
version check covers writers in other processes.
"""
from __future__ import annotations

from typing import Callable

from app.core.engine.domain import Session
from app.core.engine.errors import ConcurrentUpdate, SessionNotFound
from app.core.engine.ports import AsyncSessionStore
from app.core.engine.state_machine import Transition
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


async def load_session(store: AsyncSessionStore, tenant_id: str, session_id: str) -> Session:
    session = await store.get(tenant_id, session_id)
    if session is None:
        raise SessionNotFound(tenant_id, session_id)
    return session


async def update_session(
    store: AsyncSessionStore,
    tenant_id: str,
    session_id: str,
    step: Callable[[Session], Transition],
    *,
    retries: int = 3,
) -> Transition:
    """
    Load the session, run ``step`` on it and save the result if it changed.

    On ConcurrentUpdate the session is reloaded and ``step`` re-run against
    the fresh row, at most ``retries`` more times. ``step`` must be pure.
    """
    attempt = 0
    while True:
        current = await load_session(store, tenant_id, session_id)
        transition = step(current)
        if not transition.changed:
            return transition

        try:
            saved = await store.save(transition.session)
        except ConcurrentUpdate:
            AppMetrics.write_conflict("session")
            if attempt >= retries:
                logger.error(
                    f"Session write lost {attempt + 1} times in a row: "
                    f"tenant={tenant_id}, session={session_id}"
                )
                raise
            attempt += 1
            logger.info(
                f"Session changed underneath us, retrying ({attempt}/{retries}): "
                f"tenant={tenant_id}, session={session_id}"
            )
            continue

        if saved.status != current.status:
            AppMetrics.session_transition(tenant_id, saved.status.value)
            logger.info(
                f"Session {session_id}: {current.status.value} -> {saved.status.value}",
                extra={"tenant_id": tenant_id, "session_id": session_id},
            )
        return Transition(saved, True)
