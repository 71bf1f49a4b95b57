"""
Capsule role hierarchy and capability rules.

Pure functions, no I/O. Storage roles and external roles are separate enums
joined by an explicit two-way table; the owner's effective role is always
founder no matter what is stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from capsules_shared.schemas.capsules import (
    Capability,
    CapsulePermissions,
    MemberDbRole,
    MemberRole,
)

ROLE_RANK: dict[MemberRole, int] = {
    MemberRole.FOUNDER: 3,
    MemberRole.ADMIN: 2,
    MemberRole.LEADER: 1,
    MemberRole.MEMBER: 0,
}

# guest has no external role and grants nothing
DB_TO_UI_ROLE: dict[MemberDbRole, MemberRole] = {
    MemberDbRole.OWNER: MemberRole.FOUNDER,
    MemberDbRole.ADMIN: MemberRole.ADMIN,
    MemberDbRole.MODERATOR: MemberRole.LEADER,
    MemberDbRole.MEMBER: MemberRole.MEMBER,
}
UI_TO_DB_ROLE: dict[MemberRole, MemberDbRole] = {ui: db for db, ui in DB_TO_UI_ROLE.items()}

CAPABILITY_MIN_ROLE: dict[Capability, MemberRole] = {
    Capability.INVITE_MEMBERS: MemberRole.LEADER,
    Capability.APPROVE_REQUESTS: MemberRole.ADMIN,
    Capability.CHANGE_ROLES: MemberRole.ADMIN,
    Capability.REMOVE_MEMBERS: MemberRole.ADMIN,
    Capability.CUSTOMIZE: MemberRole.ADMIN,
    Capability.MANAGE_LADDERS: MemberRole.ADMIN,
    Capability.MODERATE_CONTENT: MemberRole.ADMIN,
}


@dataclass(frozen=True)
class RoleHolder:
    """A user's standing in one capsule, as the rules see it."""

    user_id: str
    role: Optional[MemberRole]
    is_owner: bool = False


def to_ui_role(db_role: Optional[MemberDbRole]) -> Optional[MemberRole]:
    if db_role is None:
        return None
    return DB_TO_UI_ROLE.get(db_role)


def to_db_role(role: MemberRole) -> MemberDbRole:
    return UI_TO_DB_ROLE[role]


def role_rank(role: Optional[MemberRole]) -> int:
    if role is None:
        return 0
    return ROLE_RANK[role]


def resolve_effective_role(
    owner_id: str, user_id: Optional[str], stored_role: Optional[MemberDbRole]
) -> Optional[MemberRole]:
    if user_id and user_id == owner_id:
        return MemberRole.FOUNDER
    role = to_ui_role(stored_role)
    # only the owner may hold founder
    if role == MemberRole.FOUNDER:
        return None
    return role


def has_capability(role: Optional[MemberRole], capability: Capability) -> bool:
    if role is None:
        return False
    return role_rank(role) >= ROLE_RANK[CAPABILITY_MIN_ROLE[capability]]


def capabilities_for(role: Optional[MemberRole]) -> CapsulePermissions:
    return CapsulePermissions(
        **{capability.value: has_capability(role, capability) for capability in Capability}
    )


def can_assign_role(actor: RoleHolder, new_role: MemberRole) -> bool:
    """Founder is never assignable; otherwise the owner may assign anything."""
    if new_role == MemberRole.FOUNDER:
        return False
    if actor.is_owner:
        return True
    return role_rank(new_role) < role_rank(actor.role)


def outranks(actor: RoleHolder, target: RoleHolder) -> bool:
    if target.is_owner:
        return False
    if actor.is_owner:
        return True
    return role_rank(target.role) < role_rank(actor.role)


def can_remove_member(actor: RoleHolder, target: RoleHolder) -> bool:
    return has_capability(actor.role, Capability.REMOVE_MEMBERS) and outranks(actor, target)


def can_change_role(actor: RoleHolder, target: RoleHolder, new_role: MemberRole) -> bool:
    return (
        has_capability(actor.role, Capability.CHANGE_ROLES)
        and outranks(actor, target)
        and can_assign_role(actor, new_role)
    )
