"""Base cache interface."""

from __future__ import annotations

import abc
from typing import Any, Optional


class BaseCache(metaclass=abc.ABCMeta):
    """Abstract key/value cache with per-entry TTL and prefix invalidation.

    Values are JSON-compatible data (dicts, lists, scalars).  Last write wins.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or ``None`` on miss/expiry."""
        raise NotImplementedError

    @abc.abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; return how many were removed."""
        raise NotImplementedError
