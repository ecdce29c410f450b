# app/infra/keyed_lock.py
"""
Per-key asyncio locks.

Serializes writers of the same session inside one process:

    async with session_locks.hold((tenant_id, session_id)):
        ...

Locks are created on first use and dropped once nobody holds or waits
for them, so the table stays as small as the set of busy keys.
Cross-process safety comes from the store's compare-and-swap, not from here.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Hashable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    def __init__(self) -> None:
        self._entries: dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
