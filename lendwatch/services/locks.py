"""Per-position asyncio locks shared by the executor, updaters and repay path."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class PositionLocks:
    """Lazily created lock per position id.

    Locks are never discarded: dropping one while a waiter is being woken
    would let a newcomer create a second lock for the same position.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def is_locked(self, position_id: str) -> bool:
        lock = self._locks.get(position_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, position_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(position_id, asyncio.Lock())
        async with lock:
            yield
