"""Dynamic policy loading and deny-gating evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .cache.base import BaseCache
from .cache.keys import policies_key
from .conditions import matches
from .constants import DEFAULT_CACHE_TTL_SECONDS
from .models import (
    AccessContext,
    AccessPolicy,
    PermissionAction,
    PolicyEffect,
    ResourceType,
    UserRole,
)
from .store.repository import AccessStore

logger = logging.getLogger(__name__)


@dataclass
class PolicyOutcome:
    """Result of running the applicable policies for one context."""

    denied_by: Optional[str] = None
    matched: List[str] = field(default_factory=list)

    @property
    def denied(self) -> bool:
        return self.denied_by is not None


class PolicyEngine:
    """Evaluates active policies, highest priority first.

    A deny policy whose conditions match ends evaluation.  A matching allow
    policy is recorded but grants nothing by itself.
    """

    def __init__(
        self, store: AccessStore, cache: BaseCache, ttl: int = DEFAULT_CACHE_TTL_SECONDS
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl

    async def active_policies(
        self, resource_type: ResourceType, action: PermissionAction, role: UserRole
    ) -> list[AccessPolicy]:
        key = policies_key(resource_type, action, role)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Policy cache hit for {key}")
            return [AccessPolicy.model_validate(p) for p in cached]

        policies = await self.store.list_active_policies(resource_type, action, role)
        await self.cache.set(
            key,
            [p.model_dump(mode="json", by_alias=True, exclude_none=True) for p in policies],
            self.ttl,
        )
        return policies

    async def evaluate(self, ctx: AccessContext) -> PolicyOutcome:
        outcome = PolicyOutcome()
        policies = await self.active_policies(ctx.resource_type, ctx.action, ctx.role)
        for policy in policies:
            if not matches(policy.conditions, ctx):
                continue
            if policy.effect == PolicyEffect.DENY:
                logger.debug(f"Policy {policy.name} denies {ctx.user_id}")
                outcome.denied_by = policy.name
                return outcome
            outcome.matched.append(policy.name)
        return outcome
