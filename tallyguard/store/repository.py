"""Store abstraction consumed by the decision engine."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..clock import as_utc
from ..models import (
    AccessPolicy,
    GeographicScope,
    PermissionAction,
    PermissionCheckRecord,
    ResourceType,
    UserPermissionOverride,
    UserRole,
)


class AccessStore(Protocol):
    """Protocol for policy, scope, override and audit persistence backends."""

    async def find_override(
        self,
        user_id: str,
        resource_type: ResourceType,
        resource_id: Optional[str],
        action: PermissionAction,
        as_of: Optional[datetime] = None,
    ) -> UserPermissionOverride | None:
        """Return the highest-precedence unexpired override, if any.

        An exact ``resource_id`` match beats a wildcard; ties go to the most
        recently created entry.
        """

    async def list_scopes(self, user_id: str) -> list[GeographicScope]:
        """Return every geographic scope assigned to the user."""

    async def list_active_policies(
        self, resource_type: ResourceType, action: PermissionAction, role: UserRole
    ) -> list[AccessPolicy]:
        """Return active matching policies, highest priority first."""

    async def record_check(self, record: PermissionCheckRecord) -> None:
        """Append an audit record."""

    async def list_checks(
        self, since: datetime, user_id: Optional[str] = None
    ) -> list[PermissionCheckRecord]:
        """Return audit records checked at or after ``since``."""

    async def save_override(
        self, override: UserPermissionOverride
    ) -> UserPermissionOverride:
        """Persist an override and return it with its id."""

    async def delete_override(self, override_id: int) -> bool:
        """Remove an override; ``False`` when it did not exist."""

    async def save_scope(self, scope: GeographicScope) -> GeographicScope:
        """Persist a scope and return it with its id."""

    async def delete_scope(self, scope_id: int) -> bool:
        """Remove a scope; ``False`` when it did not exist."""

    async def save_policy(self, policy: AccessPolicy) -> AccessPolicy:
        """Insert or replace a policy by its unique name."""


def pick_override(
    candidates: Iterable[UserPermissionOverride],
    resource_id: Optional[str],
    as_of: datetime,
) -> UserPermissionOverride | None:
    """Apply override precedence to already-filtered candidates."""
    as_of = as_utc(as_of)
    live = [
        o
        for o in candidates
        if o.is_active(as_of) and (o.resource_id is None or o.resource_id == resource_id)
    ]
    if not live:
        return None
    return max(live, key=lambda o: (not o.is_wildcard, o.created_at, o.id or 0))


def sort_policies(policies: Iterable[AccessPolicy]) -> list[AccessPolicy]:
    return sorted(policies, key=lambda p: (-p.priority, p.id or 0, p.name))
