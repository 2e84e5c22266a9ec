"""Redis cache backend for multi-process deployments."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..errors import CacheError
from .base import BaseCache

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class RedisCache(BaseCache):
    """Redis-based cache; values are stored as JSON strings with ``SETEX``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        if redis is None and client is None:
            raise ImportError("redis package is required for RedisCache")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self._redis: Optional[Any] = client

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        client = await self._client()
        try:
            raw = await client.get(self._key(key))
        except Exception as exc:
            raise CacheError(f"redis GET {key} failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # unreadable entries behave as a miss and get repopulated
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        client = await self._client()
        try:
            await client.setex(self._key(key), ttl, json.dumps(value))
        except Exception as exc:
            raise CacheError(f"redis SETEX {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        client = await self._client()
        try:
            await client.delete(self._key(key))
        except Exception as exc:
            raise CacheError(f"redis DEL {key} failed: {exc}") from exc

    async def delete_prefix(self, prefix: str) -> int:
        client = await self._client()
        pattern = _GLOB_SPECIAL.sub(r"\\\1", self._key(prefix)) + "*"
        try:
            keys = [key async for key in client.scan_iter(match=pattern)]
            if not keys:
                return 0
            return await client.delete(*keys)
        except Exception as exc:
            raise CacheError(f"redis prefix delete {prefix} failed: {exc}") from exc
