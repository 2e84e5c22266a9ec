"""End-to-end decisions through AccessEngine with in-memory backends."""

from datetime import datetime, timedelta, timezone

import pytest

from tallyguard import AccessEngine
from tallyguard.cache import InMemoryCache
from tallyguard.errors import StoreError
from tallyguard.models import (
    AccessContext,
    AccessPolicy,
    GeographicScope,
    UserPermissionOverride,
)
from tallyguard.pipeline import DEFAULT_STAGES
from tallyguard.store import InMemoryAccessStore

NOW = datetime(2027, 8, 9, 10, 0, tzinfo=timezone.utc)
EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)


class FailingScopesStore(InMemoryAccessStore):
    async def list_scopes(self, user_id):
        raise StoreError("database unavailable")


class FailingAuditStore(InMemoryAccessStore):
    async def record_check(self, record):
        raise StoreError("audit table locked")


def _ctx(user_id, role, resource_type, action, **kwargs):
    kwargs.setdefault("timestamp", NOW)
    return AccessContext(
        user_id=user_id,
        role=role,
        resource_type=resource_type,
        action=action,
        **kwargs,
    )


@pytest.fixture
def store():
    return InMemoryAccessStore()


@pytest.fixture
def engine(store):
    return AccessEngine(store, InMemoryCache())


@pytest.mark.asyncio
async def test_super_admin_is_granted(engine):
    decision = await engine.evaluate(_ctx("admin", "super_admin", "configuration", "manage"))
    assert decision.granted is True
    assert decision.reason == "access_granted"
    assert decision.applied_policies == ["super_admin_full_access"]


@pytest.mark.asyncio
async def test_deny_override_beats_super_admin(engine, store):
    await store.save_override(
        UserPermissionOverride(
            user_id="admin", resource_type="configuration", action="manage", effect="deny"
        )
    )
    decision = await engine.evaluate(_ctx("admin", "super_admin", "configuration", "manage"))
    assert decision.granted is False
    assert decision.reason == "user_permission_override"
    assert decision.applied_policies == ["user_permission_override"]


@pytest.mark.asyncio
async def test_allow_override_skips_role_table(engine, store):
    ctx = _ctx("obs-1", "field_observer", "election_result", "delete", resource_id="r1")
    assert (await engine.evaluate(ctx)).granted is False

    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1", resource_type="election_result", action="delete", effect="allow"
        )
    )
    decision = await engine.evaluate(ctx)
    assert decision.granted is True
    assert decision.reason == "user_permission_override"


@pytest.mark.asyncio
async def test_deny_override_for_manager(engine, store):
    await store.save_override(
        UserPermissionOverride(
            user_id="mgr", resource_type="election", action="create", effect="deny"
        )
    )
    decision = await engine.evaluate(_ctx("mgr", "election_manager", "election", "create"))
    assert decision.granted is False
    assert decision.reason == "user_permission_override"


@pytest.mark.asyncio
async def test_exact_override_beats_wildcard(engine, store):
    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1",
            resource_type="incident",
            action="delete",
            effect="allow",
            created_at=NOW - timedelta(days=1),
        )
    )
    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1",
            resource_type="incident",
            resource_id="inc-7",
            action="delete",
            effect="deny",
            created_at=NOW - timedelta(days=2),
        )
    )
    exact = await engine.evaluate(
        _ctx("obs-1", "field_observer", "incident", "delete", resource_id="inc-7")
    )
    other = await engine.evaluate(
        _ctx("obs-1", "field_observer", "incident", "delete", resource_id="inc-8")
    )
    assert exact.granted is False
    assert other.granted is True


@pytest.mark.asyncio
async def test_cached_wildcard_does_not_shadow_resource_named_any(engine, store):
    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1", resource_type="incident", action="delete", effect="allow"
        )
    )
    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1",
            resource_type="incident",
            resource_id="any",
            action="delete",
            effect="deny",
        )
    )
    wildcard = await engine.evaluate(_ctx("obs-1", "field_observer", "incident", "delete"))
    named = await engine.evaluate(
        _ctx("obs-1", "field_observer", "incident", "delete", resource_id="any")
    )
    assert wildcard.granted is True
    assert named.granted is False
    assert named.reason == "user_permission_override"


@pytest.mark.asyncio
async def test_expired_override_is_ignored(engine, store):
    await store.save_override(
        UserPermissionOverride(
            user_id="obs-1",
            resource_type="election_result",
            action="delete",
            effect="allow",
            expires_at=NOW - timedelta(minutes=1),
        )
    )
    decision = await engine.evaluate(
        _ctx("obs-1", "field_observer", "election_result", "delete")
    )
    assert decision.granted is False
    assert decision.reason.startswith("role field_observer not allowed")


@pytest.mark.asyncio
async def test_role_table_denial(engine):
    decision = await engine.evaluate(_ctx("pub", "public_viewer", "incident", "create"))
    assert decision.granted is False
    assert decision.reason == "role public_viewer not allowed action create on incident"
    assert decision.applied_policies == ["rbac_public_viewer"]


@pytest.mark.asyncio
async def test_county_scope(engine, store):
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="county", county_id="047"))

    inside = await engine.evaluate(
        _ctx("obs-1", "field_observer", "polling_station", "read", resource_attributes={"countyId": "047"})
    )
    outside = await engine.evaluate(
        _ctx("obs-1", "field_observer", "polling_station", "read", resource_attributes={"countyId": "001"})
    )
    assert inside.granted is True
    assert "county_scope:047" in inside.applied_policies
    assert outside.granted is False
    assert outside.reason == "outside user geographic scope"


@pytest.mark.asyncio
async def test_observer_without_scope(engine):
    decision = await engine.evaluate(_ctx("obs-9", "field_observer", "incident", "read"))
    assert decision.granted is False
    assert decision.reason == "no scope assigned"


@pytest.mark.asyncio
async def test_ownership_by_submitter(store):
    # field observers hold no update capability, so run without the role table
    stages = [s for s in DEFAULT_STAGES if s.name != "role_capability"]
    engine = AccessEngine(store, InMemoryCache(), stages=stages)
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="national"))
    own = await engine.evaluate(
        _ctx("obs-1", "field_observer", "incident", "update", resource_attributes={"submittedBy": "obs-1"})
    )
    other = await engine.evaluate(
        _ctx("obs-1", "field_observer", "incident", "update", resource_attributes={"submittedBy": "obs-2"})
    )
    assert own.granted is True
    assert "resource_owner" in own.applied_policies
    assert other.granted is False
    assert other.reason == "only own submissions"


@pytest.mark.asyncio
async def test_manager_may_update_others(engine):
    decision = await engine.evaluate(
        _ctx("mgr", "election_manager", "election_result", "approve", resource_attributes={"submittedBy": "obs-2"})
    )
    assert decision.granted is True
    assert "manager_override" in decision.applied_policies


@pytest.mark.asyncio
@pytest.mark.parametrize("status,granted", [("active", True), ("completed", False), (None, False)])
async def test_result_submission_requires_active_election(engine, store, status, granted):
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="ward", ward_id="w3"))
    attributes = {"wardId": "w3"}
    if status is not None:
        attributes["electionStatus"] = status
    decision = await engine.evaluate(
        _ctx("obs-1", "field_observer", "election_result", "submit", resource_attributes=attributes)
    )
    assert decision.granted is granted
    if not granted:
        assert decision.reason == "can only submit results during active elections"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,granted",
    [("preliminary", False), ("verified", True), ("confirmed", True)],
)
async def test_public_viewer_sees_only_verified_results(engine, status, granted):
    decision = await engine.evaluate(
        _ctx("pub", "public_viewer", "election_result", "read", resource_attributes={"resultStatus": status})
    )
    assert decision.granted is granted
    if not granted:
        assert decision.reason == "public viewers can only view verified results"


@pytest.mark.asyncio
async def test_deny_policy_reason_is_policy_name(engine, store):
    await store.save_policy(
        AccessPolicy(
            name="after-hours-lockout",
            effect="deny",
            roles=["election_manager"],
            resource_type="election",
            actions=["update"],
            conditions={
                "timeRange": {
                    "start": NOW - timedelta(hours=1),
                    "end": NOW + timedelta(hours=1),
                }
            },
        )
    )
    decision = await engine.evaluate(_ctx("mgr", "election_manager", "election", "update"))
    assert decision.granted is False
    assert decision.reason == "after-hours-lockout"

    later = await engine.evaluate(
        _ctx("mgr", "election_manager", "election", "update", timestamp=NOW + timedelta(hours=2))
    )
    assert later.granted is True


@pytest.mark.asyncio
async def test_allow_policy_grants_nothing_on_its_own(engine, store):
    await store.save_policy(
        AccessPolicy(
            name="observers-may-delete",
            effect="allow",
            roles=["field_observer"],
            resource_type="incident",
            actions=["delete"],
        )
    )
    decision = await engine.evaluate(_ctx("obs-1", "field_observer", "incident", "delete"))
    assert decision.granted is False
    assert "observers-may-delete" not in decision.applied_policies


@pytest.mark.asyncio
async def test_matching_allow_policy_is_listed(engine, store):
    await store.save_policy(
        AccessPolicy(
            name="trusted-devices",
            effect="allow",
            roles=["election_manager"],
            resource_type="election",
            actions=["read"],
            conditions={"deviceIds": ["dev-1"]},
        )
    )
    decision = await engine.evaluate(
        _ctx("mgr", "election_manager", "election", "read", device_id="dev-1")
    )
    assert decision.granted is True
    assert decision.applied_policies[-1] == "trusted-devices"


@pytest.mark.asyncio
async def test_invalidate_user_refreshes_overrides_and_scopes(engine, store):
    saved = await store.save_override(
        UserPermissionOverride(
            user_id="obs-1", resource_type="incident", action="delete", effect="allow"
        )
    )
    ctx = _ctx("obs-1", "field_observer", "incident", "delete")
    assert (await engine.evaluate(ctx)).granted is True

    await store.delete_override(saved.id)
    assert (await engine.evaluate(ctx)).granted is True

    await engine.invalidate_user("obs-1")
    assert (await engine.evaluate(ctx)).granted is False

    read = _ctx("obs-1", "field_observer", "incident", "read", resource_attributes={"countyId": "047"})
    assert (await engine.evaluate(read)).reason == "no scope assigned"
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="county", county_id="047"))
    assert (await engine.evaluate(read)).reason == "no scope assigned"
    await engine.invalidate_user("obs-1")
    assert (await engine.evaluate(read)).granted is True


@pytest.mark.asyncio
async def test_invalidate_policies(engine, store):
    ctx = _ctx("mgr", "election_manager", "polling_station", "update")
    assert (await engine.evaluate(ctx)).granted is True

    await store.save_policy(
        AccessPolicy(
            name="station-freeze",
            effect="deny",
            roles=["election_manager"],
            resource_type="polling_station",
            actions=["update"],
        )
    )
    assert (await engine.evaluate(ctx)).granted is True

    await engine.invalidate_policies()
    decision = await engine.evaluate(ctx)
    assert decision.granted is False
    assert decision.reason == "station-freeze"


@pytest.mark.asyncio
async def test_store_failure_denies_with_evaluation_error():
    engine = AccessEngine(FailingScopesStore(), InMemoryCache())
    decision = await engine.evaluate(_ctx("obs-1", "field_observer", "incident", "read"))
    assert decision.granted is False
    assert decision.reason == "evaluation_error"
    assert decision.applied_policies == []


@pytest.mark.asyncio
async def test_every_decision_is_audited(engine, store):
    await engine.evaluate(_ctx("admin", "super_admin", "election", "read", ip_address="10.0.0.5"))
    await engine.evaluate(_ctx("pub", "public_viewer", "incident", "create"))
    assert engine.audit.pending > 0
    await engine.audit.flush()

    records = await store.list_checks(EPOCH)
    assert [r.granted for r in records] == [True, False]
    assert records[0].reason is None
    assert records[0].ip_address == "10.0.0.5"
    assert records[1].reason == "role public_viewer not allowed action create on incident"


@pytest.mark.asyncio
async def test_audit_failure_does_not_affect_decision():
    engine = AccessEngine(FailingAuditStore(), InMemoryCache())
    decision = await engine.evaluate(_ctx("admin", "super_admin", "election", "read"))
    await engine.audit.flush()
    assert decision.granted is True
    assert engine.audit.pending == 0


@pytest.mark.asyncio
async def test_audit_can_be_disabled(store):
    engine = AccessEngine(store, InMemoryCache(), audit_enabled=False)
    await engine.evaluate(_ctx("admin", "super_admin", "election", "read"))
    await engine.close()
    assert await store.list_checks(EPOCH) == []


@pytest.mark.asyncio
async def test_decisions_are_deterministic(engine, store):
    await store.save_scope(GeographicScope(user_id="obs-1", scope_level="county", county_id="047"))
    ctx = _ctx(
        "obs-1",
        "field_observer",
        "election_result",
        "submit",
        resource_attributes={"countyId": "047", "electionStatus": "active"},
    )
    first = await engine.evaluate(ctx)
    second = await engine.evaluate(ctx)
    assert (first.granted, first.reason, first.applied_policies) == (
        second.granted,
        second.reason,
        second.applied_policies,
    )


@pytest.mark.asyncio
async def test_user_and_system_stats(engine):
    await engine.evaluate(_ctx("admin", "super_admin", "election", "read"))
    await engine.evaluate(_ctx("pub", "public_viewer", "incident", "create"))
    await engine.evaluate(_ctx("pub", "public_viewer", "incident", "delete"))
    await engine.audit.flush()

    user = await engine.user_stats("pub")
    assert user.summary.total == 2
    assert user.summary.denied == 2
    assert user.top_denied_users is None

    system = await engine.system_stats()
    assert system.summary.total == 3
    assert system.summary.granted == 1
    assert system.by_resource_type["incident"].denied == 2
    assert system.top_denied_users[0].user_id == "pub"
    assert system.top_denied_users[0].count == 2
