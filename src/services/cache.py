"""Key-value cache with per-entry TTL.

Callers treat the cache as an optimization only: every ``get`` may miss and
every ``put`` may fail, and neither is allowed to break a sync.

The in-process implementation is sufficient for single-instance
deployments.  For several instances, back ``KeyValueCache`` with a shared
store (e.g. Redis) instead.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Protocol


class KeyValueCache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None: ...


class InMemoryTTLCache:
    """Dict-backed cache; expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # key -> (expires_at, value)
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
