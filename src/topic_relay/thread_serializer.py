from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ThreadSerializer:
    """Runs tasks one at a time per key, in arrival order.

    Tasks for different keys run concurrently. A failing task releases the
    key like a successful one; its exception goes to its own caller only.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, _KeyLock] = {}

    async def run_serialized(self, key: Hashable, task: Callable[[], Awaitable[T]]) -> T:
        entry = self._locks.get(key)
        if entry is None:
            entry = _KeyLock()
            self._locks[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                return await task()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def active_keys(self) -> int:
        return len(self._locks)
