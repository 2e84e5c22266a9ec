"""Cached lookup of explicit per-user permission overrides."""

from __future__ import annotations

import logging
from typing import Optional

from .cache.base import BaseCache
from .cache.keys import permission_key
from .constants import DEFAULT_CACHE_TTL_SECONDS
from .models import AccessContext, UserPermissionOverride
from .store.repository import AccessStore

logger = logging.getLogger(__name__)


class OverrideResolver:
    """Finds the override that applies to a context, cache first.

    Only hits are cached.  A cached override is re-checked against the
    context timestamp, so an entry that expired while cached reads as a miss.
    """

    def __init__(
        self, store: AccessStore, cache: BaseCache, ttl: int = DEFAULT_CACHE_TTL_SECONDS
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl

    async def lookup(self, ctx: AccessContext) -> Optional[UserPermissionOverride]:
        key = permission_key(ctx.user_id, ctx.resource_type, ctx.resource_id, ctx.action)
        cached = await self.cache.get(key)
        if cached is not None:
            override = UserPermissionOverride.model_validate(cached)
            if override.is_active(ctx.timestamp):
                logger.debug(f"Override cache hit for {key}")
                return override
            logger.debug(f"Cached override for {key} has expired")

        override = await self.store.find_override(
            ctx.user_id,
            ctx.resource_type,
            ctx.resource_id,
            ctx.action,
            as_of=ctx.timestamp,
        )
        if override is not None:
            await self.cache.set(key, override.model_dump(mode="json"), self.ttl)
        return override
