"""Data models for access decisions, policies, scopes and audit records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .clock import as_utc, utcnow
from .conditions import PolicyConditions


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ELECTION_MANAGER = "election_manager"
    FIELD_OBSERVER = "field_observer"
    PUBLIC_VIEWER = "public_viewer"


class ResourceType(str, Enum):
    ELECTION = "election"
    ELECTION_CONTEST = "election_contest"
    CANDIDATE = "candidate"
    ELECTION_RESULT = "election_result"
    INCIDENT = "incident"
    POLLING_STATION = "polling_station"
    AUDIT_LOG = "audit_log"
    USER = "user"
    PARTY = "party"
    OBSERVER = "observer"
    CONFIGURATION = "configuration"
    POLICY = "policy"


class PermissionAction(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    SUBMIT = "submit"
    VERIFY = "verify"
    EXPORT = "export"
    MANAGE = "manage"


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class ScopeLevel(str, Enum):
    NATIONAL = "national"
    COUNTY = "county"
    CONSTITUENCY = "constituency"
    WARD = "ward"


class AccessContext(BaseModel):
    """Everything known about a single access request.

    ``resource_attributes`` is an open mapping; the engine reads ``ownerId`` /
    ``createdBy`` / ``submittedBy``, ``countyId`` / ``constituencyId`` /
    ``wardId``, ``electionStatus`` and ``resultStatus`` from it.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    user_id: str
    role: UserRole
    resource_type: ResourceType
    action: PermissionAction
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    device_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("resource_attributes", mode="before")
    @classmethod
    def _attributes_default(cls, value: Any) -> Any:
        return {} if value is None else value

    def attribute(self, name: str) -> Any:
        return self.resource_attributes.get(name)


class Decision(BaseModel):
    """Outcome of one evaluation."""

    granted: bool
    reason: str
    applied_policies: List[str] = Field(default_factory=list)
    evaluation_time_ms: int = 0


class BulkResult(BaseModel):
    results: List[Decision] = Field(default_factory=list)
    overall_granted: bool = True
    evaluation_time_ms: int = 0


class UserPermissionOverride(BaseModel):
    """Explicit per-user allow/deny; ``resource_id=None`` is a wildcard."""

    id: Optional[int] = None
    user_id: str
    resource_type: ResourceType
    resource_id: Optional[str] = None
    action: PermissionAction
    effect: PolicyEffect
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    granted_by: Optional[str] = None

    @field_validator("expires_at", "created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def is_active(self, at: datetime) -> bool:
        return self.expires_at is None or self.expires_at > as_utc(at)

    @property
    def is_wildcard(self) -> bool:
        return self.resource_id is None


class GeographicScope(BaseModel):
    """A jurisdiction assigned to a user."""

    id: Optional[int] = None
    user_id: str
    scope_level: ScopeLevel
    county_id: Optional[str] = None
    constituency_id: Optional[str] = None
    ward_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_level_ids(self) -> "GeographicScope":
        required = {
            ScopeLevel.COUNTY: "county_id",
            ScopeLevel.CONSTITUENCY: "constituency_id",
            ScopeLevel.WARD: "ward_id",
        }.get(self.scope_level)
        if required and not getattr(self, required):
            raise ValueError(f"{required} is required for {self.scope_level.value} scope")
        return self


class AccessPolicy(BaseModel):
    """Dynamically configured policy, evaluated highest priority first."""

    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    effect: PolicyEffect
    priority: int = 0
    roles: List[UserRole] = Field(default_factory=list)
    resource_type: ResourceType
    actions: List[PermissionAction] = Field(default_factory=list)
    conditions: PolicyConditions = Field(default_factory=PolicyConditions)
    is_active: bool = True

    @field_validator("conditions", mode="before")
    @classmethod
    def _conditions_default(cls, value: Any) -> Any:
        return {} if value is None else value

    def applies_to(
        self, resource_type: ResourceType, action: PermissionAction, role: UserRole
    ) -> bool:
        return (
            self.is_active
            and self.resource_type == resource_type
            and action in self.actions
            and role in self.roles
        )


class PermissionCheckRecord(BaseModel):
    """Append-only audit entry for one decision."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    resource_type: ResourceType
    resource_id: Optional[str] = None
    action: PermissionAction
    granted: bool
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    device_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    checked_at: datetime = Field(default_factory=utcnow)

    @field_validator("checked_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_decision(
        cls, ctx: AccessContext, decision: Decision, checked_at: Optional[datetime] = None
    ) -> "PermissionCheckRecord":
        return cls(
            user_id=ctx.user_id,
            resource_type=ctx.resource_type,
            resource_id=ctx.resource_id,
            action=ctx.action,
            granted=decision.granted,
            reason=None if decision.granted else decision.reason,
            ip_address=ctx.ip_address,
            device_id=ctx.device_id,
            latitude=ctx.latitude,
            longitude=ctx.longitude,
            checked_at=checked_at or utcnow(),
        )
