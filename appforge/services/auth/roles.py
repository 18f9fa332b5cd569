from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    GUEST = "guest"
    USER = "user"
    EDITOR = "editor"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]


ROLE_RANK: dict[Role, int] = {
    Role.GUEST: 1,
    Role.USER: 2,
    Role.EDITOR: 3,
    Role.ADMIN: 4,
}

# Roles an end user may pick for themselves at signup.
SELF_ASSIGNABLE_ROLES = frozenset({Role.USER, Role.EDITOR})
# Roles that bypass ownership restrictions.
PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.EDITOR})


def normalize_role(role: str | Role) -> Role:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    if isinstance(role, Role):
        return role
    try:
        return Role(role.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def role_allows(*, role: Role | str | None, minimum_role: Role | str) -> bool:
    # Compare ranks so unknown or missing roles never satisfy a check.
    if role is None:
        return False
    try:
        resolved = normalize_role(role)
    except ValueError:
        return False
    return resolved.rank >= normalize_role(minimum_role).rank
