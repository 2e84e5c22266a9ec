"""Static role capability table (the RBAC baseline)."""

from __future__ import annotations

from typing import Dict, FrozenSet, Mapping

from .models import PermissionAction as A
from .models import ResourceType as R
from .models import UserRole

ROLE_CAPABILITIES: Mapping[UserRole, Mapping[R, FrozenSet[A]]] = {
    # super_admin is granted before this table is consulted
    UserRole.SUPER_ADMIN: {},
    UserRole.ELECTION_MANAGER: {
        R.ELECTION: frozenset({A.CREATE, A.READ, A.UPDATE, A.DELETE, A.APPROVE}),
        R.ELECTION_CONTEST: frozenset({A.CREATE, A.READ, A.UPDATE, A.DELETE}),
        R.CANDIDATE: frozenset({A.CREATE, A.READ, A.UPDATE, A.DELETE}),
        R.ELECTION_RESULT: frozenset(
            {A.CREATE, A.READ, A.UPDATE, A.VERIFY, A.APPROVE, A.EXPORT}
        ),
        R.INCIDENT: frozenset({A.READ, A.UPDATE, A.VERIFY}),
        R.USER: frozenset({A.READ, A.UPDATE}),
        R.POLLING_STATION: frozenset({A.READ, A.UPDATE}),
        R.AUDIT_LOG: frozenset({A.READ, A.EXPORT}),
    },
    UserRole.FIELD_OBSERVER: {
        R.ELECTION: frozenset({A.READ}),
        R.ELECTION_CONTEST: frozenset({A.READ}),
        R.CANDIDATE: frozenset({A.READ}),
        R.ELECTION_RESULT: frozenset({A.CREATE, A.READ, A.SUBMIT}),
        R.INCIDENT: frozenset({A.CREATE, A.READ}),
        R.POLLING_STATION: frozenset({A.READ}),
    },
    UserRole.PUBLIC_VIEWER: {
        R.ELECTION: frozenset({A.READ}),
        R.ELECTION_CONTEST: frozenset({A.READ}),
        R.CANDIDATE: frozenset({A.READ}),
        # only verified/confirmed results, enforced by the state gate
        R.ELECTION_RESULT: frozenset({A.READ}),
    },
}


def allowed_actions(role: UserRole, resource_type: R) -> FrozenSet[A]:
    return ROLE_CAPABILITIES.get(role, {}).get(resource_type, frozenset())


def is_capable(role: UserRole, resource_type: R, action: A) -> bool:
    """Return ``True`` if ``role`` may perform ``action`` on ``resource_type``."""
    if role == UserRole.SUPER_ADMIN:
        return True
    return action in allowed_actions(role, resource_type)


def capability_matrix() -> Dict[str, Dict[str, list[str]]]:
    """Plain-data view of the table, sorted for display."""
    return {
        role.value: {
            rt.value: sorted(a.value for a in actions)
            for rt, actions in table.items()
        }
        for role, table in ROLE_CAPABILITIES.items()
    }
