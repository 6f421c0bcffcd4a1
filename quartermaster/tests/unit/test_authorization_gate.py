from __future__ import annotations

import pytest

from quartermaster.core.errors import Forbidden
from quartermaster.domain.state import Role
from quartermaster.services.auth.roles import (
    ANY_ROLE,
    ITEM_CIRCULATE,
    ITEM_DELETE,
    ITEM_READ,
    ITEM_WRITE,
    USER_ADMIN,
    USER_LIST,
    authorize,
    normalize_role,
)
from quartermaster.services.auth.tokens import Claims


def _claims(role: Role) -> Claims:
    return Claims(subject_id="p1", tenant_id="t1", role=role)


@pytest.mark.parametrize(
    ("allowed", "permitted"),
    [
        (ITEM_DELETE, {Role.ADMIN}),
        (ITEM_WRITE, {Role.ADMIN, Role.LEADER}),
        (ITEM_CIRCULATE, {Role.ADMIN, Role.LEADER, Role.SCOUT}),
        (ITEM_READ, {Role.ADMIN, Role.LEADER, Role.SCOUT, Role.VIEWER}),
        (USER_LIST, {Role.ADMIN, Role.LEADER}),
        (USER_ADMIN, {Role.ADMIN}),
        (ANY_ROLE, set(Role)),
    ],
)
def test_role_sets_match_permission_table(allowed: frozenset[Role], permitted: set[Role]) -> None:
    for role in Role:
        if role in permitted:
            assert authorize(_claims(role), allowed).role is role
        else:
            with pytest.raises(Forbidden):
                authorize(_claims(role), allowed)


def test_forbidden_reports_required_and_actual_roles() -> None:
    with pytest.raises(Forbidden) as excinfo:
        authorize(_claims(Role.SCOUT), ITEM_WRITE)
    assert excinfo.value.status_code == 403
    assert excinfo.value.details == {"requiredRoles": ["admin", "leader"], "actualRole": "scout"}


def test_authorize_returns_claims_unchanged() -> None:
    claims = _claims(Role.LEADER)
    assert authorize(claims, ITEM_WRITE) is claims


def test_normalize_role_accepts_mixed_case_and_rejects_unknown() -> None:
    assert normalize_role(" Leader ") is Role.LEADER
    assert normalize_role(Role.VIEWER) is Role.VIEWER
    with pytest.raises(ValueError):
        normalize_role("quartermaster")
