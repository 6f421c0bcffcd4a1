from __future__ import annotations

from collections.abc import Iterable

from quartermaster.core.errors import Forbidden
from quartermaster.domain.state import Role
from quartermaster.services.auth.tokens import Claims


# Permitted role sets per operation; call sites pick the set, the gate only compares.
ITEM_DELETE: frozenset[Role] = frozenset({Role.ADMIN})
ITEM_WRITE: frozenset[Role] = frozenset({Role.ADMIN, Role.LEADER})
ITEM_CIRCULATE: frozenset[Role] = frozenset({Role.ADMIN, Role.LEADER, Role.SCOUT})
ITEM_READ: frozenset[Role] = frozenset({Role.ADMIN, Role.LEADER, Role.SCOUT, Role.VIEWER})
USER_LIST: frozenset[Role] = frozenset({Role.ADMIN, Role.LEADER})
USER_ADMIN: frozenset[Role] = frozenset({Role.ADMIN})
ANY_ROLE: frozenset[Role] = frozenset(Role)

# Display order for error payloads, most privileged first.
_ROLE_ORDER: tuple[Role, ...] = (Role.ADMIN, Role.LEADER, Role.SCOUT, Role.VIEWER)


def normalize_role(role: str | Role) -> Role:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    if isinstance(role, Role):
        return role
    try:
        return Role(role.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def sorted_roles(roles: Iterable[Role]) -> list[str]:
    present = set(roles)
    return [role.value for role in _ROLE_ORDER if role in present]


def authorize(claims: Claims, allowed_roles: frozenset[Role]) -> Claims:
    """Pass the claims through when their role is permitted, else raise ``Forbidden``."""
    if claims.role in allowed_roles:
        return claims
    raise Forbidden(
        "Insufficient permissions",
        details={"requiredRoles": sorted_roles(allowed_roles), "actualRole": claims.role.value},
    )
