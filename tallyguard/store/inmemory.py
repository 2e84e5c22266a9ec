"""In-memory implementation of the access store."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from ..clock import as_utc, utcnow
from ..models import (
    AccessPolicy,
    GeographicScope,
    PermissionAction,
    PermissionCheckRecord,
    ResourceType,
    UserPermissionOverride,
    UserRole,
)
from .repository import AccessStore, pick_override, sort_policies


class InMemoryAccessStore(AccessStore):
    """Keep overrides, scopes, policies and audit records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._overrides: Dict[int, UserPermissionOverride] = {}
        self._scopes: Dict[int, GeographicScope] = {}
        self._policies: Dict[str, AccessPolicy] = {}
        self._checks: List[PermissionCheckRecord] = []
        self._next_id = 0

    def _allocate_id(self) -> int:
        self._next_id += 1
        return self._next_id

    # ------------------------------------------------------------------
    async def find_override(
        self,
        user_id: str,
        resource_type: ResourceType,
        resource_id: Optional[str],
        action: PermissionAction,
        as_of: Optional[datetime] = None,
    ) -> UserPermissionOverride | None:
        candidates = (
            o
            for o in self._overrides.values()
            if o.user_id == user_id
            and o.resource_type == resource_type
            and o.action == action
        )
        return pick_override(candidates, resource_id, as_of or utcnow())

    async def list_scopes(self, user_id: str) -> list[GeographicScope]:
        return [s for s in self._scopes.values() if s.user_id == user_id]

    async def list_active_policies(
        self, resource_type: ResourceType, action: PermissionAction, role: UserRole
    ) -> list[AccessPolicy]:
        return sort_policies(
            p for p in self._policies.values() if p.applies_to(resource_type, action, role)
        )

    async def record_check(self, record: PermissionCheckRecord) -> None:
        self._checks.append(record.model_copy(update={"id": self._allocate_id()}))

    async def list_checks(
        self, since: datetime, user_id: Optional[str] = None
    ) -> list[PermissionCheckRecord]:
        since = as_utc(since)
        return [
            c
            for c in self._checks
            if c.checked_at >= since and (user_id is None or c.user_id == user_id)
        ]

    # ------------------------------------------------------------------
    async def save_override(
        self, override: UserPermissionOverride
    ) -> UserPermissionOverride:
        saved = override.model_copy(update={"id": override.id or self._allocate_id()})
        self._overrides[saved.id] = saved
        return saved

    async def delete_override(self, override_id: int) -> bool:
        return self._overrides.pop(override_id, None) is not None

    async def save_scope(self, scope: GeographicScope) -> GeographicScope:
        saved = scope.model_copy(update={"id": scope.id or self._allocate_id()})
        self._scopes[saved.id] = saved
        return saved

    async def delete_scope(self, scope_id: int) -> bool:
        return self._scopes.pop(scope_id, None) is not None

    async def save_policy(self, policy: AccessPolicy) -> AccessPolicy:
        existing = self._policies.get(policy.name)
        policy_id = policy.id or (existing.id if existing else None) or self._allocate_id()
        saved = policy.model_copy(update={"id": policy_id})
        self._policies[saved.name] = saved
        return saved
