"""In-process cache for tests and single-process deployments."""

from __future__ import annotations

import copy
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .base import BaseCache


class InMemoryCache(BaseCache):
    """Dictionary-backed cache with lazy expiry.

    Values are deep-copied on write and read so callers never share mutable
    state with the cache.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, copy.deepcopy(value))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)
