"""
tests/test_permissions.py — Staff Ranks, Roles & Permissions
==============================================================
"""

from __future__ import annotations

import pytest

from conftest import make_user
from dreamlight.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from dreamlight.services import permission_service


class TestRanks:
    @pytest.mark.parametrize(
        "role, minimum, expected",
        [
            ("admin", "staff", True),
            ("staff", "staff", True),
            ("moderator", "staff", False),
            ("user", "moderator", False),
            (None, "user", True),
            ("weird", "moderator", False),
        ],
    )
    def test_has_rank(self, role, minimum, expected):
        assert permission_service.has_rank({"role": role}, minimum) is expected


class TestManageStaffRole:
    def test_promote_and_demote(self, db_engine, admin_user, player):
        promoted = permission_service.manage_staff_role(
            db_engine, action="promote", user_id=player["id"], new_role="moderator", actor=admin_user,
        )
        assert promoted["role"] == "moderator"
        assert player["id"] in {u["id"] for u in permission_service.list_staff(db_engine)}

        demoted = permission_service.manage_staff_role(
            db_engine, action="demote", user_id=player["id"], new_role="staff", actor=admin_user,
        )
        assert demoted["role"] == "user"

    def test_only_admins(self, db_engine, staff_user, player):
        with pytest.raises(ForbiddenError):
            permission_service.manage_staff_role(
                db_engine, action="promote", user_id=player["id"], new_role="staff", actor=staff_user,
            )

    def test_banned_admin_refused(self, db_engine, player):
        rogue = make_user(db_engine, "rogue@example.com", role="admin", banned=True)
        with pytest.raises(ForbiddenError):
            permission_service.manage_staff_role(
                db_engine, action="promote", user_id=player["id"], new_role="staff", actor=rogue,
            )

    def test_admin_cannot_demote_self(self, db_engine, admin_user):
        with pytest.raises(ForbiddenError):
            permission_service.manage_staff_role(
                db_engine, action="demote", user_id=admin_user["id"], new_role=None, actor=admin_user,
            )

    def test_invalid_action_and_role(self, db_engine, admin_user, player):
        with pytest.raises(ValidationError):
            permission_service.manage_staff_role(
                db_engine, action="fire", user_id=player["id"], new_role="staff", actor=admin_user,
            )
        with pytest.raises(ValidationError):
            permission_service.manage_staff_role(
                db_engine, action="promote", user_id=player["id"], new_role="overlord", actor=admin_user,
            )

    def test_unknown_user(self, db_engine, admin_user):
        with pytest.raises(NotFoundError):
            permission_service.manage_staff_role(
                db_engine, action="promote", user_id="missing", new_role="staff", actor=admin_user,
            )


class TestStaffRoles:
    def test_role_grants_permissions(self, db_engine, admin_user, player):
        role = permission_service.create_role(
            db_engine,
            {"name": "Support", "permissions": ["chat.respond", "analytics.view"]},
            actor_id=admin_user["id"],
        )
        assert role["name"] == "support"
        assert role["display_name"] == "Support"

        assert not permission_service.has_permission(db_engine, player, "chat.respond")
        permission_service.assign_role(db_engine, player["id"], role["id"], actor_id=admin_user["id"])
        assert permission_service.has_permission(db_engine, player, "chat.respond")
        assert not permission_service.has_permission(db_engine, player, "users.manage")
        assert "support" in permission_service.get_user_roles(db_engine, player["id"])

        permission_service.revoke_role(db_engine, player["id"], role["id"], actor_id=admin_user["id"])
        assert not permission_service.has_permission(db_engine, player, "chat.respond")

    def test_admin_holds_everything(self, db_engine, admin_user):
        assert permission_service.has_permission(db_engine, admin_user, "users.manage")

    def test_inactive_role_grants_nothing(self, db_engine, admin_user, player):
        role = permission_service.create_role(
            db_engine, {"name": "paused", "permissions": ["rules.manage"]}, actor_id=admin_user["id"],
        )
        permission_service.assign_role(db_engine, player["id"], role["id"], actor_id=admin_user["id"])
        permission_service.update_role(db_engine, role["id"], {"is_active": False}, actor_id=admin_user["id"])
        assert not permission_service.has_permission(db_engine, player, "rules.manage")

    def test_duplicate_role_name(self, db_engine, admin_user):
        permission_service.create_role(db_engine, {"name": "events"}, actor_id=admin_user["id"])
        with pytest.raises(ConflictError):
            permission_service.create_role(db_engine, {"name": "Events"}, actor_id=admin_user["id"])

    def test_unknown_permission_rejected(self, db_engine, admin_user):
        role = permission_service.create_role(db_engine, {"name": "events"}, actor_id=admin_user["id"])
        with pytest.raises(ValidationError):
            permission_service.set_role_permissions(
                db_engine, role["id"], ["chat.respond", "launch.missiles"], actor_id=admin_user["id"],
            )

    def test_list_roles_includes_permissions(self, db_engine, admin_user):
        permission_service.create_role(
            db_engine, {"name": "lead", "permissions": ["rules.manage", "chat.respond"]},
            actor_id=admin_user["id"],
        )
        roles = permission_service.list_roles(db_engine)
        assert roles[0]["permissions"] == ["chat.respond", "rules.manage"]

    def test_delete_and_revoke_missing(self, db_engine, admin_user, player):
        role = permission_service.create_role(db_engine, {"name": "temp"}, actor_id=admin_user["id"])
        permission_service.delete_role(db_engine, role["id"], actor_id=admin_user["id"])
        with pytest.raises(NotFoundError):
            permission_service.delete_role(db_engine, role["id"], actor_id=admin_user["id"])
        with pytest.raises(NotFoundError):
            permission_service.revoke_role(db_engine, player["id"], role["id"], actor_id=admin_user["id"])
