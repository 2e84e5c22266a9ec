"""Cache key layout shared by every backend."""

from __future__ import annotations

from typing import Optional

from ..constants import GEO_SCOPES_KEY_PREFIX, PERMISSION_KEY_PREFIX, POLICIES_KEY_PREFIX
from ..models import PermissionAction, ResourceType, UserRole

# exact ids are tagged so no real id can collide with the wildcard slot
WILDCARD_RESOURCE = "*"
EXACT_RESOURCE_TAG = "id="


def permission_key(
    user_id: str,
    resource_type: ResourceType,
    resource_id: Optional[str],
    action: PermissionAction,
) -> str:
    rid = WILDCARD_RESOURCE if resource_id is None else f"{EXACT_RESOURCE_TAG}{resource_id}"
    return f"{PERMISSION_KEY_PREFIX}:{user_id}:{resource_type.value}:{rid}:{action.value}"


def user_permission_prefix(user_id: str) -> str:
    return f"{PERMISSION_KEY_PREFIX}:{user_id}:"


def geo_scopes_key(user_id: str) -> str:
    return f"{GEO_SCOPES_KEY_PREFIX}:{user_id}"


def policies_key(
    resource_type: ResourceType, action: PermissionAction, role: UserRole
) -> str:
    return f"{POLICIES_KEY_PREFIX}:{resource_type.value}:{action.value}:{role.value}"


def policies_prefix() -> str:
    return f"{POLICIES_KEY_PREFIX}:"
