"""The ordered authorization pipeline.

Stages run in a fixed order and each returns a :class:`StageResult`:

1. ``override``        explicit per-user allow/deny, terminal either way
2. ``role_capability`` super_admin shortcut, then the static role table
3. ``scope``           geographic jurisdiction
4. ``ownership``       owner checks for update/delete/verify/approve
5. ``policy``          dynamic deny-gating policies
6. ``state_gate``      election/result state rules for results

The first terminal verdict wins; if every stage passes, access is granted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

from . import constants as C
from .capabilities import is_capable
from .conditions import ACTIVE_ELECTION_STATUSES, VERIFIED_RESULT_STATUSES, status_in
from .models import (
    AccessContext,
    Decision,
    PermissionAction,
    PolicyEffect,
    ResourceType,
    UserRole,
)
from .overrides import OverrideResolver
from .policies import PolicyEngine
from .scopes import ScopeResolver, scope_match

if TYPE_CHECKING:
    from .audit import AuditSink

logger = logging.getLogger(__name__)

_MANAGERS = frozenset({UserRole.SUPER_ADMIN, UserRole.ELECTION_MANAGER})


class Verdict(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    PASS = "pass"
    ALLOW = "allow"
    DENY = "deny"

    @property
    def terminal(self) -> bool:
        return self in (Verdict.ALLOW, Verdict.DENY)


@dataclass(frozen=True)
class StageResult:
    verdict: Verdict
    reason: Optional[str] = None
    applied: Tuple[str, ...] = ()

    @classmethod
    def passed(cls, *applied: str) -> "StageResult":
        return cls(Verdict.PASS, applied=applied)

    @classmethod
    def skipped(cls, *applied: str) -> "StageResult":
        return cls(Verdict.NOT_APPLICABLE, applied=applied)

    @classmethod
    def deny(cls, reason: str, *applied: str) -> "StageResult":
        return cls(Verdict.DENY, reason=reason, applied=applied)

    @classmethod
    def allow(cls, reason: str, *applied: str) -> "StageResult":
        return cls(Verdict.ALLOW, reason=reason, applied=applied)


@dataclass
class PipelineDeps:
    """Collaborators the stages read from."""

    overrides: OverrideResolver
    scopes: ScopeResolver
    policies: PolicyEngine


StageFn = Callable[[AccessContext, PipelineDeps], Awaitable[StageResult]]


class Stage(NamedTuple):
    name: str
    run: StageFn


# ----------------------------------------------------------------------
# Stages


async def override_stage(ctx: AccessContext, deps: PipelineDeps) -> StageResult:
    override = await deps.overrides.lookup(ctx)
    if override is None:
        return StageResult.skipped()
    if override.effect == PolicyEffect.ALLOW:
        return StageResult.allow(C.REASON_OVERRIDE, C.REASON_OVERRIDE)
    return StageResult.deny(C.REASON_OVERRIDE, C.REASON_OVERRIDE)


async def role_capability_stage(ctx: AccessContext, deps: PipelineDeps) -> StageResult:
    if ctx.role == UserRole.SUPER_ADMIN:
        return StageResult.allow(C.REASON_GRANTED, "super_admin_full_access")
    tag = f"rbac_{ctx.role.value}"
    if is_capable(ctx.role, ctx.resource_type, ctx.action):
        return StageResult.passed(tag)
    return StageResult.deny(
        f"role {ctx.role.value} not allowed action {ctx.action.value} "
        f"on {ctx.resource_type.value}",
        tag,
    )


async def scope_stage(ctx: AccessContext, deps: PipelineDeps) -> StageResult:
    if ctx.role in _MANAGERS:
        return StageResult.passed("national_scope")

    scopes = await deps.scopes.load(ctx.user_id)
    if not scopes:
        if ctx.role == UserRole.PUBLIC_VIEWER and ctx.action == PermissionAction.READ:
            return StageResult.passed("public_read")
        return StageResult.deny(C.REASON_NO_SCOPE)

    tag = scope_match(scopes, ctx.resource_attributes)
    if tag is None:
        return StageResult.deny(C.REASON_OUTSIDE_SCOPE)
    return StageResult.passed(tag)


def resource_owner(ctx: AccessContext) -> Optional[str]:
    for attribute in C.OWNER_ATTRIBUTES:
        owner = ctx.attribute(attribute)
        if owner:
            return str(owner)
    return None


async def ownership_stage(ctx: AccessContext, deps: PipelineDeps) -> StageResult:
    if ctx.action.value not in C.OWNERSHIP_ACTIONS:
        return StageResult.skipped("ownership_not_applicable")

    owner = resource_owner(ctx)
    if owner is None:
        if ctx.role in _MANAGERS:
            return StageResult.passed("manager_override")
        return StageResult.deny(C.REASON_OWNER_UNKNOWN)
    if owner == ctx.user_id:
        return StageResult.passed("resource_owner")
    if ctx.role == UserRole.FIELD_OBSERVER:
        return StageResult.deny(C.REASON_NOT_OWNER, "field_observer_ownership_required")
    if ctx.role in _MANAGERS:
        return StageResult.passed("manager_override")
    return StageResult.deny(C.REASON_OWNERSHIP_FAILED)


async def policy_stage(ctx: AccessContext, deps: PipelineDeps) -> StageResult:
    outcome = await deps.policies.evaluate(ctx)
    if outcome.denied:
        return StageResult.deny(outcome.denied_by, outcome.denied_by)
    return StageResult.passed(*outcome.matched)


async def state_gate_stage(ctx: AccessContext, deps: PipelineDeps) -> StageResult:
    if ctx.resource_type != ResourceType.ELECTION_RESULT:
        return StageResult.skipped()

    if ctx.role == UserRole.FIELD_OBSERVER and ctx.action in (
        PermissionAction.SUBMIT,
        PermissionAction.CREATE,
    ):
        if not status_in(ctx.attribute("electionStatus"), ACTIVE_ELECTION_STATUSES):
            return StageResult.deny(C.REASON_ELECTION_NOT_ACTIVE, "election_active_required")
        return StageResult.passed("election_active_required")

    if ctx.role == UserRole.PUBLIC_VIEWER and ctx.action == PermissionAction.READ:
        if not status_in(ctx.attribute("resultStatus"), VERIFIED_RESULT_STATUSES):
            return StageResult.deny(C.REASON_RESULT_NOT_VERIFIED, "verified_results_only")
        return StageResult.passed("verified_results_only")

    return StageResult.skipped()


DEFAULT_STAGES: Tuple[Stage, ...] = (
    Stage("override", override_stage),
    Stage("role_capability", role_capability_stage),
    Stage("scope", scope_stage),
    Stage("ownership", ownership_stage),
    Stage("policy", policy_stage),
    Stage("state_gate", state_gate_stage),
)


# ----------------------------------------------------------------------
# Pipeline


@dataclass
class Trace:
    """Per-stage verdicts collected during one run."""

    steps: List[Tuple[str, StageResult]] = field(default_factory=list)

    @property
    def applied(self) -> List[str]:
        return [tag for _, result in self.steps for tag in result.applied]


class DecisionPipeline:
    """Runs the stages for a context and produces a :class:`Decision`.

    Any exception raised by a stage (store or cache failure) becomes a deny
    with reason ``evaluation_error``.  Every decision is handed to the audit
    sink, which records it in the background.
    """

    def __init__(
        self,
        deps: PipelineDeps,
        stages: Sequence[Stage] = DEFAULT_STAGES,
        audit: Optional["AuditSink"] = None,
    ) -> None:
        self.deps = deps
        self.stages = tuple(stages)
        self.audit = audit

    async def run(self, ctx: AccessContext) -> Tuple[bool, str, Trace]:
        """Run the stages without timing, error conversion or auditing."""
        trace = Trace()
        for stage in self.stages:
            result = await stage.run(ctx, self.deps)
            trace.steps.append((stage.name, result))
            logger.debug(f"Stage {stage.name} -> {result.verdict.value} for {ctx.user_id}")
            if result.verdict.terminal:
                granted = result.verdict == Verdict.ALLOW
                default = C.REASON_GRANTED if granted else f"{stage.name}_denied"
                return granted, result.reason or default, trace
        return True, C.REASON_GRANTED, trace

    async def evaluate(self, ctx: AccessContext) -> Decision:
        started = time.perf_counter()
        try:
            granted, reason, trace = await self.run(ctx)
            applied = trace.applied
        except Exception:
            logger.exception(
                f"Access evaluation failed for user={ctx.user_id} "
                f"resource={ctx.resource_type.value} action={ctx.action.value}"
            )
            granted, reason, applied = False, C.REASON_EVALUATION_ERROR, []

        decision = Decision(
            granted=granted,
            reason=reason,
            applied_policies=applied,
            evaluation_time_ms=int((time.perf_counter() - started) * 1000),
        )
        if self.audit is not None:
            self.audit.record(ctx, decision)
        return decision
