"""Public entry point for access decisions."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional, Sequence

from .audit import AuditSink
from .cache import get_cache
from .cache.base import BaseCache
from .cache.keys import geo_scopes_key, policies_prefix, user_permission_prefix
from .clock import utcnow
from .config import TallyguardConfig, load_config
from .constants import DEFAULT_CACHE_TTL_SECONDS, REASON_EVALUATION_ERROR
from .models import AccessContext, BulkResult, Decision
from .overrides import OverrideResolver
from .pipeline import DEFAULT_STAGES, DecisionPipeline, PipelineDeps, Stage
from .policies import PolicyEngine
from .scopes import ScopeResolver
from .stats import PermissionStats, summarize
from .store import get_store
from .store.repository import AccessStore

logger = logging.getLogger(__name__)


class AccessEngine:
    """Answers whether an actor may perform an action on a resource.

    The engine is constructed with its store and cache; it holds no other
    shared state.  Callers that mutate overrides, scopes or policies must call
    :meth:`invalidate_user` or :meth:`invalidate_policies` afterwards.

    Example:
        >>> engine = AccessEngine(InMemoryAccessStore(), InMemoryCache())
        >>> decision = await engine.evaluate(ctx)
    """

    def __init__(
        self,
        store: AccessStore,
        cache: BaseCache,
        *,
        cache_ttl: int = DEFAULT_CACHE_TTL_SECONDS,
        audit_enabled: bool = True,
        max_concurrency: Optional[int] = None,
        stages: Sequence[Stage] = DEFAULT_STAGES,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_concurrency = max_concurrency
        self.audit = AuditSink(store, enabled=audit_enabled)
        self.deps = PipelineDeps(
            overrides=OverrideResolver(store, cache, cache_ttl),
            scopes=ScopeResolver(store, cache, cache_ttl),
            policies=PolicyEngine(store, cache, cache_ttl),
        )
        self.pipeline = DecisionPipeline(self.deps, stages, audit=self.audit)

    @classmethod
    def from_config(cls, config: Optional[TallyguardConfig] = None) -> "AccessEngine":
        """Build an engine with the store and cache named by configuration."""
        config = config or load_config()
        return cls(
            get_store(config=config),
            get_cache(config=config),
            cache_ttl=config.cache.ttl_seconds,
            audit_enabled=config.audit.enabled,
            max_concurrency=config.bulk.max_concurrency,
        )

    # ------------------------------------------------------------------
    # Decisions
    async def evaluate(self, ctx: AccessContext) -> Decision:
        return await self.pipeline.evaluate(ctx)

    async def evaluate_many(self, contexts: Sequence[AccessContext]) -> list[Decision]:
        """Evaluate every context concurrently; output order matches input order."""
        semaphore = (
            asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        )

        async def _one(ctx: AccessContext) -> Decision:
            if semaphore is None:
                return await self.evaluate(ctx)
            async with semaphore:
                return await self.evaluate(ctx)

        results = await asyncio.gather(
            *(_one(ctx) for ctx in contexts), return_exceptions=True
        )
        decisions: list[Decision] = []
        for ctx, result in zip(contexts, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Bulk evaluation failed for user={ctx.user_id}: {result}")
                result = Decision(granted=False, reason=REASON_EVALUATION_ERROR)
            decisions.append(result)
        return decisions

    async def check_bulk(self, contexts: Sequence[AccessContext]) -> BulkResult:
        started = time.perf_counter()
        results = await self.evaluate_many(contexts)
        return BulkResult(
            results=results,
            overall_granted=all(d.granted for d in results),
            evaluation_time_ms=int((time.perf_counter() - started) * 1000),
        )

    # ------------------------------------------------------------------
    # Cache invalidation
    async def invalidate_user(self, user_id: str) -> None:
        """Drop cached overrides and scopes for ``user_id``."""
        removed = await self.cache.delete_prefix(user_permission_prefix(user_id))
        await self.cache.delete(geo_scopes_key(user_id))
        logger.info(f"Invalidated cache for user {user_id} ({removed} override keys)")

    async def invalidate_policies(self) -> None:
        """Drop every cached policy list."""
        removed = await self.cache.delete_prefix(policies_prefix())
        logger.info(f"Invalidated policy cache ({removed} keys)")

    # ------------------------------------------------------------------
    # Reporting
    async def user_stats(self, user_id: str, days: int = 7) -> PermissionStats:
        end = utcnow()
        start = end - timedelta(days=days)
        records = await self.store.list_checks(start, user_id=user_id)
        return summarize(records, days, start, end)

    async def system_stats(self, days: int = 7, top_n: int = 10) -> PermissionStats:
        end = utcnow()
        start = end - timedelta(days=days)
        records = await self.store.list_checks(start)
        return summarize(records, days, start, end, top_n=top_n, include_users=True)

    # ------------------------------------------------------------------
    async def close(self) -> None:
        """Wait for pending audit writes and release the cache connection."""
        await self.audit.flush()
        await self.cache.disconnect()
