"""Authorization policy shared by every order and checkout operation."""

import enum
from dataclasses import dataclass

from .errors import Forbidden, NotFound


class Role(str, enum.Enum):
    ADMIN = "Admin"
    CLIENT = "Client"


class Action(str, enum.Enum):
    VIEW = "view"
    EDIT = "edit"
    CANCEL = "cancel"
    CHECKOUT = "checkout"
    TRANSITION = "transition"
    STATS = "stats"


ADMIN_ONLY = frozenset({Action.TRANSITION, Action.STATS})


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def can_act(role: Role, actor_id: str, owner_id: str | None, action: Action) -> bool:
    if role == Role.ADMIN:
        return True
    if action in ADMIN_ONLY:
        return False
    return owner_id is not None and owner_id == actor_id


def enforce(actor: Actor, action: Action, owner_id: str | None = None, not_found: NotFound | None = None) -> None:
    """
    Raise if ``actor`` may not perform ``action``.

    Role-gated actions fail with Forbidden. Ownership failures raise
    ``not_found`` so other tenants' resources look absent.
    """
    if can_act(actor.role, actor.user_id, owner_id, action):
        return
    if action in ADMIN_ONLY or not_found is None:
        raise Forbidden(f"Action '{action.value}' is not allowed for role {actor.role.value}")
    raise not_found
