"""Tallyguard: attribute-based access control for election management."""

from .cache import get_cache
from .engine import AccessEngine
from .models import (
    AccessContext,
    AccessPolicy,
    BulkResult,
    Decision,
    GeographicScope,
    PermissionAction,
    PermissionCheckRecord,
    PolicyEffect,
    ResourceType,
    ScopeLevel,
    UserPermissionOverride,
    UserRole,
)
from .store import get_store

__version__ = "0.1.0"
__all__ = [
    "AccessEngine",
    "AccessContext",
    "AccessPolicy",
    "BulkResult",
    "Decision",
    "GeographicScope",
    "PermissionAction",
    "PermissionCheckRecord",
    "PolicyEffect",
    "ResourceType",
    "ScopeLevel",
    "UserPermissionOverride",
    "UserRole",
    "get_cache",
    "get_store",
]
