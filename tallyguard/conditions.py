"""Policy condition schema and evaluation.

Conditions are stored as JSON on each policy (camelCase keys, e.g.
``{"timeRange": {...}, "ipWhitelist": [...]}``).  :class:`PolicyConditions`
validates that document when a policy is loaded and compiles it into a tuple of
typed condition objects.  :func:`evaluate_condition` dispatches on the
condition type; :func:`matches` is the logical AND over all of them.

Malformed ``timeRange`` or ``geofence`` entries are logged and dropped at load
time, so a broken document degrades to "condition absent" rather than raising
during evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import singledispatch
from typing import TYPE_CHECKING, Any, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .clock import as_utc
from .geo import LatLng, haversine_km, point_in_polygon

if TYPE_CHECKING:
    from .models import AccessContext

logger = logging.getLogger(__name__)

ACTIVE_ELECTION_STATUSES = frozenset({"active"})
VERIFIED_RESULT_STATUSES = frozenset({"verified", "confirmed"})


def status_in(value: Any, accepted: FrozenSet[str]) -> bool:
    """Membership test for status attributes; non-string values never match."""
    return isinstance(value, str) and value in accepted


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError("timeRange end precedes start")
        return self


class CircleGeofence(BaseModel):
    type: Literal["circle"] = "circle"
    center: LatLng
    radius: float = Field(gt=0, description="Radius in kilometres")


class PolygonGeofence(BaseModel):
    type: Literal["polygon"] = "polygon"
    polygon: List[LatLng] = Field(min_length=3)


Geofence = Union[CircleGeofence, PolygonGeofence]


class PolicyConditions(BaseModel):
    """Optional predicates attached to a policy; all present ones must hold."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    time_range: Optional[TimeRange] = None
    ip_whitelist: Optional[List[str]] = None
    ip_blacklist: Optional[List[str]] = None
    ip_range: Optional[List[str]] = None
    geofence: Optional[Geofence] = Field(default=None, discriminator="type")
    device_ids: Optional[List[str]] = None
    election_status: Optional[List[str]] = None
    result_status: Optional[List[str]] = None
    requires_active_election: bool = False
    requires_verified_result: bool = False

    @field_validator("time_range", "geofence", mode="wrap")
    @classmethod
    def _drop_malformed(cls, value: Any, handler, info) -> Any:
        try:
            return handler(value)
        except ValidationError as exc:
            logger.warning(
                f"Ignoring malformed {info.field_name} condition {value!r}: "
                f"{exc.error_count()} error(s)"
            )
            return None

    def to_conditions(self) -> Tuple["Condition", ...]:
        """Compile the present predicates into typed condition objects."""
        compiled: List[Condition] = []
        if self.time_range is not None:
            compiled.append(TimeWindow(self.time_range.start, self.time_range.end))
        if self.ip_whitelist is not None:
            compiled.append(IpAllowList(frozenset(self.ip_whitelist)))
        # legacy key, checked as its own list
        if self.ip_range is not None:
            compiled.append(IpAllowList(frozenset(self.ip_range)))
        if self.ip_blacklist is not None:
            compiled.append(IpBlockList(frozenset(self.ip_blacklist)))
        if isinstance(self.geofence, CircleGeofence):
            compiled.append(CircleFence(self.geofence.center, self.geofence.radius))
        elif isinstance(self.geofence, PolygonGeofence):
            compiled.append(PolygonFence(tuple(self.geofence.polygon)))
        if self.device_ids is not None:
            compiled.append(DeviceAllowList(frozenset(self.device_ids)))
        if self.election_status is not None:
            compiled.append(StatusSet("electionStatus", frozenset(self.election_status)))
        if self.result_status is not None:
            compiled.append(StatusSet("resultStatus", frozenset(self.result_status)))
        if self.requires_active_election:
            compiled.append(StatusGate("electionStatus", ACTIVE_ELECTION_STATUSES))
        if self.requires_verified_result:
            compiled.append(StatusGate("resultStatus", VERIFIED_RESULT_STATUSES))
        return tuple(compiled)


# ----------------------------------------------------------------------
# Condition kinds


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class IpAllowList:
    addresses: FrozenSet[str]


@dataclass(frozen=True)
class IpBlockList:
    addresses: FrozenSet[str]


@dataclass(frozen=True)
class CircleFence:
    center: LatLng
    radius_km: float


@dataclass(frozen=True)
class PolygonFence:
    vertices: Tuple[LatLng, ...]


@dataclass(frozen=True)
class DeviceAllowList:
    device_ids: FrozenSet[str]


@dataclass(frozen=True)
class StatusSet:
    """Membership test, skipped when the attribute is absent."""

    attribute: str
    allowed: FrozenSet[str]


@dataclass(frozen=True)
class StatusGate:
    """Hard requirement: the attribute must be present and accepted."""

    attribute: str
    accepted: FrozenSet[str]


Condition = Union[
    TimeWindow,
    IpAllowList,
    IpBlockList,
    CircleFence,
    PolygonFence,
    DeviceAllowList,
    StatusSet,
    StatusGate,
]


# ----------------------------------------------------------------------
# Evaluation


@singledispatch
def evaluate_condition(condition: Any, ctx: "AccessContext") -> bool:
    logger.warning(f"Unknown condition type {type(condition).__name__}; ignoring")
    return True


@evaluate_condition.register(TimeWindow)
def _(condition: TimeWindow, ctx: "AccessContext") -> bool:
    return condition.start <= ctx.timestamp <= condition.end


@evaluate_condition.register(IpAllowList)
def _(condition: IpAllowList, ctx: "AccessContext") -> bool:
    if not ctx.ip_address:
        return True
    return ctx.ip_address in condition.addresses


@evaluate_condition.register(IpBlockList)
def _(condition: IpBlockList, ctx: "AccessContext") -> bool:
    if not ctx.ip_address:
        return True
    return ctx.ip_address not in condition.addresses


@evaluate_condition.register(CircleFence)
def _(condition: CircleFence, ctx: "AccessContext") -> bool:
    if ctx.latitude is None or ctx.longitude is None:
        return True
    distance = haversine_km(
        ctx.latitude, ctx.longitude, condition.center.lat, condition.center.lng
    )
    return distance <= condition.radius_km


@evaluate_condition.register(PolygonFence)
def _(condition: PolygonFence, ctx: "AccessContext") -> bool:
    if ctx.latitude is None or ctx.longitude is None:
        return True
    return point_in_polygon(ctx.latitude, ctx.longitude, condition.vertices)


@evaluate_condition.register(DeviceAllowList)
def _(condition: DeviceAllowList, ctx: "AccessContext") -> bool:
    if not ctx.device_id:
        return True
    return ctx.device_id in condition.device_ids


@evaluate_condition.register(StatusSet)
def _(condition: StatusSet, ctx: "AccessContext") -> bool:
    value = ctx.attribute(condition.attribute)
    if not value:
        return True
    return status_in(value, condition.allowed)


@evaluate_condition.register(StatusGate)
def _(condition: StatusGate, ctx: "AccessContext") -> bool:
    return status_in(ctx.attribute(condition.attribute), condition.accepted)


def matches(conditions: Optional[PolicyConditions], ctx: "AccessContext") -> bool:
    """Return ``True`` when every present condition holds for ``ctx``."""
    if conditions is None:
        return True
    return all(evaluate_condition(c, ctx) for c in conditions.to_conditions())
