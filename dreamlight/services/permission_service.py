"""
dreamlight.services.permission_service — Staff Roles & Permissions
===================================================================

Two layers of access:

1. ``custom_users.role`` — the coarse rank (user < moderator < staff < admin).
2. Staff roles — named bundles of permissions assigned to users
   (``user_role_assignments``).  ``admin`` implicitly holds every permission.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from dreamlight.constants import ROLE_HIERARCHY
from dreamlight.database.models import (
    Permission,
    RolePermission,
    StaffRole,
    User,
    UserRoleAssignment,
)
from dreamlight.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from dreamlight.services.audit_service import (
    audited_create,
    audited_delete,
    audited_update,
    log_action,
    row_to_dict,
)

logger = logging.getLogger(__name__)

STAFF_ROLE_ACTIONS = ("promote", "demote", "change_role")


def role_rank(role: str | None) -> int:
    try:
        return ROLE_HIERARCHY.index(role or "user")
    except ValueError:
        return 0


def has_rank(user: dict, minimum: str) -> bool:
    return role_rank(user.get("role")) >= role_rank(minimum)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_user_roles(engine, user_id: str) -> list[str]:
    """Legacy role (if not ``user``) plus active staff-role names."""
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return []
        roles: list[str] = []
        if user.role and user.role != "user":
            roles.append(user.role)
        names = session.scalars(
            select(StaffRole.name)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == StaffRole.id)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active.is_(True),
                StaffRole.is_active.is_(True),
            )
        ).all()
        for name in names:
            if name not in roles:
                roles.append(name)
        return roles


def get_user_permissions(engine, user_id: str) -> set[str]:
    with Session(engine) as session:
        return set(session.scalars(
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == RolePermission.role_id)
            .join(StaffRole, StaffRole.id == UserRoleAssignment.role_id)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active.is_(True),
                StaffRole.is_active.is_(True),
            )
        ).all())


def has_permission(engine, user: dict, permission: str) -> bool:
    if user.get("role") == "admin":
        return True
    return permission in get_user_permissions(engine, user["id"])


def list_roles(engine) -> list[dict]:
    with Session(engine) as session:
        roles = session.scalars(
            select(StaffRole).order_by(StaffRole.hierarchy_level.desc(), StaffRole.name)
        ).all()
        pairs = session.execute(
            select(RolePermission.role_id, Permission.name)
            .join(Permission, Permission.id == RolePermission.permission_id)
        ).all()
        by_role: dict[int, list[str]] = {}
        for role_id, name in pairs:
            by_role.setdefault(role_id, []).append(name)
        return [
            {**row_to_dict(r), "permissions": sorted(by_role.get(r.id, []))}
            for r in roles
        ]


def list_permissions(engine) -> list[dict]:
    with Session(engine) as session:
        rows = session.scalars(select(Permission).order_by(Permission.category, Permission.name)).all()
        return [row_to_dict(p) for p in rows]


def list_staff(engine) -> list[dict]:
    """Every account above ``user`` rank."""
    with Session(engine) as session:
        rows = session.scalars(
            select(User).where(User.role != "user").order_by(User.email)
        ).all()
        return [u.to_public_dict() for u in rows]


# ---------------------------------------------------------------------------
# Promotions
# ---------------------------------------------------------------------------
def manage_staff_role(
    engine, *, action: str, user_id: str, new_role: str | None, actor: dict,
) -> dict:
    """Promote, demote or change the legacy rank of *user_id*.

    Only an unbanned admin may call this.  ``demote`` always lands on
    ``user``.
    """
    if actor.get("role") != "admin" or actor.get("banned"):
        raise ForbiddenError("Admin access required")
    if action not in STAFF_ROLE_ACTIONS:
        raise ValidationError("Invalid action")

    if action == "demote":
        target_role = "user"
    else:
        if new_role not in ROLE_HIERARCHY:
            raise ValidationError(f"Invalid role: {new_role}")
        target_role = new_role

    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.id == actor.get("id") and target_role != "admin":
            raise ForbiddenError("Admins cannot demote themselves")
        before = {"role": user.role}
        user.role = target_role
        log_action(
            session,
            actor_id=actor.get("id"),
            action=f"staff_{action}",
            resource_type="user",
            resource_id=user_id,
            before=before,
            after={"role": target_role},
        )
        session.commit()
        logger.info("%s: %s → %s by %s", action, user.email, target_role, actor.get("email"))
        return user.to_public_dict()


# ---------------------------------------------------------------------------
# Staff role CRUD
# ---------------------------------------------------------------------------
def create_role(engine, data: dict, *, actor_id: str | None) -> dict:
    name = (data.get("name") or "").strip().lower()
    if not name:
        raise ValidationError("Role name is required")
    with Session(engine) as session:
        if session.scalar(select(StaffRole.id).where(StaffRole.name == name)):
            raise ConflictError(f"Staff role '{name}' already exists")
    role = StaffRole(
        name=name,
        display_name=data.get("display_name") or name.title(),
        description=data.get("description"),
        color=data.get("color"),
        hierarchy_level=int(data.get("hierarchy_level") or 0),
        is_active=bool(data.get("is_active", True)),
    )
    role = audited_create(engine, role, resource_type="staff_roles", actor_id=actor_id)
    if data.get("permissions"):
        set_role_permissions(engine, role.id, data["permissions"], actor_id=actor_id)
    return row_to_dict(role)


def update_role(engine, role_id: int, data: dict, *, actor_id: str | None) -> dict:
    fields = {k: v for k, v in data.items() if k != "permissions"}
    if "name" in fields:
        fields["name"] = (fields["name"] or "").strip().lower()
    role = audited_update(
        engine, StaffRole, role_id, resource_type="staff_roles", actor_id=actor_id, **fields,
    )
    if role is None:
        raise NotFoundError("Staff role not found")
    if "permissions" in data:
        set_role_permissions(engine, role_id, data["permissions"], actor_id=actor_id)
    return row_to_dict(role)


def delete_role(engine, role_id: int, *, actor_id: str | None) -> None:
    if not audited_delete(engine, StaffRole, role_id, resource_type="staff_roles", actor_id=actor_id):
        raise NotFoundError("Staff role not found")


def set_role_permissions(
    engine, role_id: int, permission_names: list[str], *, actor_id: str | None,
) -> list[str]:
    """Replace the permission set of *role_id*.  Unknown names are rejected."""
    wanted = sorted(set(permission_names))
    with Session(engine) as session:
        if session.get(StaffRole, role_id) is None:
            raise NotFoundError("Staff role not found")
        perms = session.scalars(select(Permission).where(Permission.name.in_(wanted))).all()
        unknown = set(wanted) - {p.name for p in perms}
        if unknown:
            raise ValidationError(f"Unknown permissions: {', '.join(sorted(unknown))}")
        before = sorted(session.scalars(
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
        ).all())
        session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        for p in perms:
            session.add(RolePermission(role_id=role_id, permission_id=p.id))
        log_action(
            session,
            actor_id=actor_id,
            action="set_permissions",
            resource_type="staff_roles",
            resource_id=str(role_id),
            before={"permissions": before},
            after={"permissions": wanted},
        )
        session.commit()
    return wanted


def assign_role(engine, user_id: str, role_id: int, *, actor_id: str | None) -> dict:
    with Session(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFoundError("User not found")
        if session.get(StaffRole, role_id) is None:
            raise NotFoundError("Staff role not found")
        row = session.scalars(
            select(UserRoleAssignment).where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role_id,
            )
        ).first()
        if row is None:
            row = UserRoleAssignment(user_id=user_id, role_id=role_id, assigned_by=actor_id)
            session.add(row)
        else:
            row.is_active = True
            row.assigned_by = actor_id
        session.flush()
        log_action(
            session,
            actor_id=actor_id,
            action="assign_role",
            resource_type="user_role_assignments",
            resource_id=str(row.id),
            after={"user_id": user_id, "role_id": role_id},
        )
        session.commit()
        return row_to_dict(row)


def revoke_role(engine, user_id: str, role_id: int, *, actor_id: str | None) -> None:
    with Session(engine) as session:
        row = session.scalars(
            select(UserRoleAssignment).where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role_id,
                UserRoleAssignment.is_active.is_(True),
            )
        ).first()
        if row is None:
            raise NotFoundError("Role assignment not found")
        row.is_active = False
        log_action(
            session,
            actor_id=actor_id,
            action="revoke_role",
            resource_type="user_role_assignments",
            resource_id=str(row.id),
            before={"user_id": user_id, "role_id": role_id},
        )
        session.commit()
