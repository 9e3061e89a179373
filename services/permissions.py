"""Per-request capability resolution for user and tenant management."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from models import ASSIGNABLE_ROLES, ROLE_ADMIN, ROLE_SUPER_ADMIN


@dataclass(frozen=True)
class Capabilities:
    can_view: bool = False
    can_edit: bool = False
    can_delete: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


NONE = Capabilities()
ALL = Capabilities(True, True, True)


def resolve_capabilities(
    actor_role: str,
    actor_tenant_id: Optional[int],
    target_tenant_id: Optional[int],
    is_self: bool = False,
    target_role: Optional[str] = None,
) -> Capabilities:
    """What *actor* may do to a record that belongs to *target_tenant_id*."""
    if actor_role == ROLE_SUPER_ADMIN:
        return ALL
    if (
        actor_role == ROLE_ADMIN
        and actor_tenant_id is not None
        and actor_tenant_id == target_tenant_id
    ):
        return Capabilities(True, True, target_role != ROLE_SUPER_ADMIN and not is_self)
    if is_self:
        return Capabilities(can_view=True, can_edit=True, can_delete=False)
    return NONE


def can_assign_role(actor_role: str, role: str) -> bool:
    return role in ASSIGNABLE_ROLES.get(actor_role, [])
