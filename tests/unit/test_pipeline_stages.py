"""Each pipeline stage tested on its own."""

import pytest

from tallyguard.cache import InMemoryCache
from tallyguard.models import AccessContext, AccessPolicy, GeographicScope, UserPermissionOverride
from tallyguard.overrides import OverrideResolver
from tallyguard.pipeline import (
    DEFAULT_STAGES,
    DecisionPipeline,
    PipelineDeps,
    Stage,
    StageResult,
    Verdict,
    ownership_stage,
    override_stage,
    policy_stage,
    resource_owner,
    role_capability_stage,
    scope_stage,
    state_gate_stage,
)
from tallyguard.policies import PolicyEngine
from tallyguard.scopes import ScopeResolver
from tallyguard.store import InMemoryAccessStore


def _deps(store=None) -> PipelineDeps:
    store = store or InMemoryAccessStore()
    cache = InMemoryCache()
    return PipelineDeps(
        overrides=OverrideResolver(store, cache),
        scopes=ScopeResolver(store, cache),
        policies=PolicyEngine(store, cache),
    )


def _ctx(role="field_observer", resource_type="election_result", action="read", **kwargs):
    return AccessContext(
        user_id=kwargs.pop("user_id", "obs-1"),
        role=role,
        resource_type=resource_type,
        action=action,
        **kwargs,
    )


def test_stage_order_is_fixed():
    assert [s.name for s in DEFAULT_STAGES] == [
        "override",
        "role_capability",
        "scope",
        "ownership",
        "policy",
        "state_gate",
    ]


@pytest.mark.asyncio
async def test_override_stage_not_applicable_without_override():
    result = await override_stage(_ctx(), _deps())
    assert result.verdict == Verdict.NOT_APPLICABLE


@pytest.mark.asyncio
@pytest.mark.parametrize("effect,verdict", [("allow", Verdict.ALLOW), ("deny", Verdict.DENY)])
async def test_override_stage_is_terminal(effect, verdict):
    store = InMemoryAccessStore()
    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1", resource_type="election_result", action="read", effect=effect
        )
    )
    result = await override_stage(_ctx(), _deps(store))
    assert result.verdict == verdict
    assert result.reason == "user_permission_override"


@pytest.mark.asyncio
async def test_role_stage():
    deps = _deps()
    admin = await role_capability_stage(_ctx(role="super_admin", action="delete"), deps)
    assert admin.verdict == Verdict.ALLOW
    assert admin.applied == ("super_admin_full_access",)

    allowed = await role_capability_stage(_ctx(action="submit"), deps)
    assert allowed.verdict == Verdict.PASS

    denied = await role_capability_stage(_ctx(action="delete"), deps)
    assert denied.verdict == Verdict.DENY
    assert denied.reason == "role field_observer not allowed action delete on election_result"


@pytest.mark.asyncio
async def test_scope_stage_managers_are_national():
    result = await scope_stage(_ctx(role="election_manager"), _deps())
    assert result == StageResult.passed("national_scope")


@pytest.mark.asyncio
async def test_scope_stage_without_scopes():
    deps = _deps()
    public = await scope_stage(_ctx(role="public_viewer", action="read"), deps)
    assert public.verdict == Verdict.PASS
    assert public.applied == ("public_read",)

    observer = await scope_stage(_ctx(action="read"), deps)
    assert observer.verdict == Verdict.DENY
    assert observer.reason == "no scope assigned"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "scope,attributes,expected",
    [
        ({"scope_level": "national"}, {}, "national_scope"),
        ({"scope_level": "county", "county_id": "047"}, {"countyId": "047"}, "county_scope:047"),
        ({"scope_level": "county", "county_id": "047"}, {"countyId": "001"}, None),
        (
            {"scope_level": "constituency", "constituency_id": "c12"},
            {"countyId": "047", "constituencyId": "c12"},
            "constituency_scope:c12",
        ),
        ({"scope_level": "ward", "ward_id": "w3"}, {"wardId": "w4"}, None),
        ({"scope_level": "ward", "ward_id": "w3"}, {}, None),
    ],
)
async def test_scope_stage_matching(scope, attributes, expected):
    store = InMemoryAccessStore()
    await store.save_scope(GeographicScope(user_id="obs-1", **scope))
    result = await scope_stage(_ctx(resource_attributes=attributes), _deps(store))
    if expected is None:
        assert result.verdict == Verdict.DENY
        assert result.reason == "outside user geographic scope"
    else:
        assert result.verdict == Verdict.PASS
        assert result.applied == (expected,)


@pytest.mark.asyncio
async def test_scope_stage_any_scope_may_match():
    store = InMemoryAccessStore()
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="county", county_id="001"))
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="ward", ward_id="w3"))
    result = await scope_stage(_ctx(resource_attributes={"countyId": "047", "wardId": "w3"}), _deps(store))
    assert result.applied == ("ward_scope:w3",)


def test_resource_owner_precedence():
    ctx = _ctx(resource_attributes={"submittedBy": "c", "createdBy": "b", "ownerId": "a"})
    assert resource_owner(ctx) == "a"
    assert resource_owner(_ctx(resource_attributes={"submittedBy": "c"})) == "c"
    assert resource_owner(_ctx()) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "role,action,attributes,verdict,reason",
    [
        ("field_observer", "read", {"submittedBy": "someone"}, Verdict.NOT_APPLICABLE, None),
        ("field_observer", "update", {"submittedBy": "obs-1"}, Verdict.PASS, None),
        ("field_observer", "update", {"submittedBy": "obs-2"}, Verdict.DENY, "only own submissions"),
        ("field_observer", "delete", {}, Verdict.DENY, "cannot determine resource ownership"),
        ("election_manager", "update", {"submittedBy": "obs-2"}, Verdict.PASS, None),
        ("election_manager", "approve", {}, Verdict.PASS, None),
        ("public_viewer", "update", {"ownerId": "obs-2"}, Verdict.DENY, "ownership check failed"),
    ],
)
async def test_ownership_stage(role, action, attributes, verdict, reason):
    result = await ownership_stage(_ctx(role=role, action=action, resource_attributes=attributes), _deps())
    assert result.verdict == verdict
    assert result.reason == reason


@pytest.mark.asyncio
async def test_policy_stage_deny_uses_policy_name():
    store = InMemoryAccessStore()
    await store.save_policy(
        AccessPolicy(
            name="block-blacklisted-ip",
            effect="deny",
            priority=5,
            roles=["field_observer"],
            resource_type="election_result",
            actions=["read"],
            conditions={"ipWhitelist": ["198.51.100.7"]},
        )
    )
    deps = _deps(store)
    denied = await policy_stage(_ctx(ip_address="198.51.100.7"), deps)
    assert denied.verdict == Verdict.DENY
    assert denied.reason == "block-blacklisted-ip"

    passed = await policy_stage(_ctx(ip_address="10.0.0.1"), deps)
    assert passed.verdict == Verdict.PASS


@pytest.mark.asyncio
async def test_policy_stage_allow_does_not_stop_evaluation():
    store = InMemoryAccessStore()
    common = dict(roles=["field_observer"], resource_type="election_result", actions=["read"])
    await store.save_policy(AccessPolicy(name="high-allow", effect="allow", priority=10, **common))
    await store.save_policy(AccessPolicy(name="low-deny", effect="deny", priority=1, **common))
    result = await policy_stage(_ctx(), _deps(store))
    assert result.verdict == Verdict.DENY
    assert result.reason == "low-deny"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "role,action,attributes,verdict",
    [
        ("field_observer", "submit", {"electionStatus": "completed"}, Verdict.DENY),
        ("field_observer", "create", {}, Verdict.DENY),
        ("field_observer", "submit", {"electionStatus": "active"}, Verdict.PASS),
        ("field_observer", "read", {"electionStatus": "completed"}, Verdict.NOT_APPLICABLE),
        ("public_viewer", "read", {"resultStatus": "preliminary"}, Verdict.DENY),
        ("public_viewer", "read", {"resultStatus": "verified"}, Verdict.PASS),
        ("public_viewer", "read", {"resultStatus": "confirmed"}, Verdict.PASS),
        ("election_manager", "create", {"electionStatus": "completed"}, Verdict.NOT_APPLICABLE),
    ],
)
async def test_state_gate_stage(role, action, attributes, verdict):
    result = await state_gate_stage(_ctx(role=role, action=action, resource_attributes=attributes), _deps())
    assert result.verdict == verdict


@pytest.mark.asyncio
async def test_state_gate_only_applies_to_results():
    result = await state_gate_stage(
        _ctx(resource_type="incident", action="create", resource_attributes={"electionStatus": "completed"}),
        _deps(),
    )
    assert result.verdict == Verdict.NOT_APPLICABLE


@pytest.mark.asyncio
async def test_pipeline_stops_at_first_deny():
    calls = []

    def _stage(name, result):
        async def run(ctx, deps):
            calls.append(name)
            return result

        return Stage(name, run)

    pipeline = DecisionPipeline(
        _deps(),
        stages=[
            _stage("one", StageResult.passed("a")),
            _stage("two", StageResult.deny("nope", "b")),
            _stage("three", StageResult.passed("c")),
        ],
    )
    decision = await pipeline.evaluate(_ctx())
    assert calls == ["one", "two"]
    assert decision.granted is False
    assert decision.reason == "nope"
    assert decision.applied_policies == ["a", "b"]


@pytest.mark.asyncio
async def test_pipeline_converts_errors_to_deny():
    async def broken(ctx, deps):
        raise RuntimeError("store down")

    pipeline = DecisionPipeline(_deps(), stages=[Stage("broken", broken)])
    decision = await pipeline.evaluate(_ctx())
    assert decision.granted is False
    assert decision.reason == "evaluation_error"


@pytest.mark.asyncio
async def test_state_gate_treats_unhashable_status_as_non_matching():
    observer = await state_gate_stage(
        _ctx(action="submit", resource_attributes={"electionStatus": ["active"]}), _deps()
    )
    assert observer.verdict == Verdict.DENY
    assert observer.reason == "can only submit results during active elections"

    viewer = await state_gate_stage(
        _ctx(role="public_viewer", resource_attributes={"resultStatus": ["verified"]}), _deps()
    )
    assert viewer.verdict == Verdict.DENY
    assert viewer.reason == "public viewers can only view verified results"
