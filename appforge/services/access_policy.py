from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from appforge.core.errors import ForbiddenError
from appforge.domain.schema import CollectionSettings
from appforge.services.auth.roles import PRIVILEGED_ROLES, Role


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self is not Action.READ


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of a permitted access check.

    When ``restrict_to_owner`` is set the store must only touch rows owned by
    ``owner_id``; a ``None`` owner then matches nothing.
    """

    restrict_to_owner: bool
    owner_id: str | None


def evaluate(
    settings: CollectionSettings,
    *,
    action: Action,
    role: Role,
    identity_id: str | None,
) -> AccessDecision:
    # Deny outright only for adminWriteOnly; ownership rules narrow instead of deny.
    if settings.admin_write_only and action.is_write and role is not Role.ADMIN:
        raise ForbiddenError(
            "Only admins can modify this collection",
            details={"action": action.value, "role": role.value},
        )

    privileged = role in PRIVILEGED_ROLES
    restrict = False
    if action is Action.READ and settings.owner_read_only and not privileged:
        restrict = True
    if action in (Action.UPDATE, Action.DELETE) and settings.owner_write_only and not privileged:
        restrict = True
    return AccessDecision(restrict_to_owner=restrict, owner_id=identity_id)


@dataclass(frozen=True)
class Caller:
    # Resolved request identity; guests carry no identity id.
    identity_id: str | None = None
    role: Role = Role.GUEST

    @property
    def is_authenticated(self) -> bool:
        return self.identity_id is not None


GUEST = Caller()
