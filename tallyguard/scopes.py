"""Geographic jurisdiction lookup and matching."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from .cache.base import BaseCache
from .cache.keys import geo_scopes_key
from .constants import DEFAULT_CACHE_TTL_SECONDS
from .models import GeographicScope, ScopeLevel
from .store.repository import AccessStore

logger = logging.getLogger(__name__)

# scope level -> (scope id field, resource attribute)
_LEVEL_FIELDS = {
    ScopeLevel.COUNTY: ("county_id", "countyId"),
    ScopeLevel.CONSTITUENCY: ("constituency_id", "constituencyId"),
    ScopeLevel.WARD: ("ward_id", "wardId"),
}


def scope_match(
    scopes: Iterable[GeographicScope], attributes: Mapping[str, Any]
) -> Optional[str]:
    """Return a tag for the first scope covering ``attributes``, else ``None``.

    A national scope covers everything; finer scopes match when the resource
    carries the same county, constituency or ward id.
    """
    for scope in scopes:
        if scope.scope_level == ScopeLevel.NATIONAL:
            return "national_scope"
        field, attribute = _LEVEL_FIELDS[scope.scope_level]
        scope_id = getattr(scope, field)
        if scope_id and attributes.get(attribute) == scope_id:
            return f"{scope.scope_level.value}_scope:{scope_id}"
    return None


class ScopeResolver:
    """Loads a user's scopes through the cache."""

    def __init__(
        self, store: AccessStore, cache: BaseCache, ttl: int = DEFAULT_CACHE_TTL_SECONDS
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl

    async def load(self, user_id: str) -> list[GeographicScope]:
        key = geo_scopes_key(user_id)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Scope cache hit for {user_id}")
            return [GeographicScope.model_validate(s) for s in cached]

        scopes = await self.store.list_scopes(user_id)
        await self.cache.set(key, [s.model_dump(mode="json") for s in scopes], self.ttl)
        return scopes
