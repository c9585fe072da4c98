"""
tests/test_content.py — Site Content Managers & Email Templates
=================================================================
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import make_user
from dreamlight.database.models import AuditLog
from dreamlight.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from dreamlight.services import content_service, email_service, permission_service


def _create(engine, entity, user, data):
    return content_service.manage_content(engine, entity, "create", user, data=data)["item"]


# ===========================================================================
# Generic manager behaviour
# ===========================================================================
class TestRules:
    def test_create_update_delete_cycle(self, db_engine, staff_user):
        rule = _create(db_engine, "rules", staff_user, {
            "title": "No RDM", "description": "Do not kill without roleplay", "category": "Combat",
        })
        assert rule["created_by"] == staff_user["id"]

        updated = content_service.manage_content(
            db_engine, "rules", "update", staff_user,
            item_id=rule["id"], data={"title": "No random deathmatch", "id": 999},
        )["item"]
        assert updated["id"] == rule["id"]
        assert updated["title"] == "No random deathmatch"

        deleted = content_service.manage_content(
            db_engine, "rules", "delete", staff_user, item_id=rule["id"],
        )
        assert deleted["success"] is True
        assert deleted["item"]["title"] == "No random deathmatch"
        assert content_service.manage_content(db_engine, "rules", "fetch", staff_user) == {"items": []}

    def test_every_change_audited(self, db_engine, staff_user):
        rule = _create(db_engine, "rules", staff_user, {"title": "Be kind"})
        content_service.manage_content(
            db_engine, "rules", "update", staff_user, item_id=rule["id"], data={"title": "Be nice"},
        )
        with Session(db_engine) as s:
            actions = s.scalars(
                select(AuditLog.action)
                .where(AuditLog.resource_type == "rules")
                .order_by(AuditLog.id)
            ).all()
        assert actions == ["create", "update"]

    def test_ordering_by_category_then_index(self, db_engine, staff_user):
        _create(db_engine, "rules", staff_user, {"title": "b", "category": "B", "order_index": 0})
        _create(db_engine, "rules", staff_user, {"title": "a2", "category": "A", "order_index": 2})
        _create(db_engine, "rules", staff_user, {"title": "a1", "category": "A", "order_index": 1})
        titles = [r["title"] for r in content_service.list_items(db_engine, "rules")]
        assert titles == ["a1", "a2", "b"]

    def test_moderators_may_edit_rules(self, db_engine):
        mod = make_user(db_engine, "mod@dreamlight.gg", role="moderator")
        assert _create(db_engine, "rules", mod, {"title": "Stay in character"})

    def test_players_refused(self, db_engine, player):
        with pytest.raises(ForbiddenError):
            _create(db_engine, "rules", player, {"title": "x"})

    def test_bad_requests(self, db_engine, staff_user):
        with pytest.raises(ValidationError):
            content_service.manage_content(db_engine, "rules", "explode", staff_user)
        with pytest.raises(ValidationError):
            _create(db_engine, "rules", staff_user, {"title": "  "})
        with pytest.raises(ValidationError):
            content_service.manage_content(db_engine, "rules", "update", staff_user, data={"title": "x"})
        with pytest.raises(NotFoundError):
            content_service.manage_content(db_engine, "rules", "delete", staff_user, item_id=404)
        with pytest.raises(NotFoundError):
            content_service.manage_content(db_engine, "recipes", "fetch", staff_user)

    def test_async_rule_manager(self, db_engine, admin_user):
        result = asyncio.run(content_service.manage_rules(
            db_engine, "create", admin_user, data={"title": "Respect staff"},
        ))
        assert result["success"] is True


class TestPublicContent:
    def test_only_active_rows(self, db_engine, staff_user):
        _create(db_engine, "partners", staff_user, {"name": "Live"})
        _create(db_engine, "partners", staff_user, {"name": "Hidden", "is_active": False})
        assert [p["name"] for p in content_service.public_items(db_engine, "partners")] == ["Live"]

    def test_canned_responses_not_public(self, db_engine):
        with pytest.raises(NotFoundError):
            content_service.public_items(db_engine, "canned_responses")


# ===========================================================================
# Per-entity hooks
# ===========================================================================
class TestTeamMembers:
    def test_role_name_copied_from_staff_role(self, db_engine, admin_user):
        role = permission_service.create_role(
            db_engine, {"name": "lead", "display_name": "Lead Developer"}, actor_id=admin_user["id"],
        )
        member = _create(db_engine, "team_members", admin_user, {"name": "Kai", "staff_role_id": role["id"]})
        assert member["role"] == "Lead Developer"
        assert member["staff_role_id"] == role["id"]
        assert "created_by" not in member

    def test_staff_role_required(self, db_engine, admin_user):
        with pytest.raises(ValidationError):
            _create(db_engine, "team_members", admin_user, {"name": "Kai"})
        with pytest.raises(ValidationError):
            _create(db_engine, "team_members", admin_user, {"name": "Kai", "staff_role_id": 999})

    def test_moderators_refused(self, db_engine):
        mod = make_user(db_engine, "mod@dreamlight.gg", role="moderator")
        with pytest.raises(ForbiddenError):
            content_service.manage_content(db_engine, "team_members", "fetch", mod)


class TestPackages:
    def test_currency_lowercased_and_defaults(self, db_engine, admin_user):
        package = _create(db_engine, "packages", admin_user, {
            "name": "Gold", "price_amount": "1500", "currency": "EUR",
        })
        assert package["price_amount"] == 1500
        assert package["currency"] == "eur"
        assert package["interval"] == "month"

    @pytest.mark.parametrize(
        "data",
        [
            {"name": "Free", "price_amount": 0},
            {"name": "Bad", "price_amount": "lots"},
            {"name": "Odd", "price_amount": 500, "interval": "fortnight"},
        ],
    )
    def test_invalid_packages(self, db_engine, admin_user, data):
        with pytest.raises(ValidationError):
            _create(db_engine, "packages", admin_user, data)

    def test_partial_update_keeps_price(self, db_engine, admin_user):
        package = _create(db_engine, "packages", admin_user, {"name": "Silver", "price_amount": 500})
        updated = content_service.manage_content(
            db_engine, "packages", "update", admin_user,
            item_id=package["id"], data={"description": "Monthly perks"},
        )["item"]
        assert updated["price_amount"] == 500

    def test_permission_grants_package_access(self, db_engine, admin_user):
        mod = make_user(db_engine, "shop@dreamlight.gg", role="moderator")
        with pytest.raises(ForbiddenError):
            content_service.manage_content(db_engine, "packages", "fetch", mod)

        role = permission_service.create_role(
            db_engine, {"name": "shop", "permissions": ["subscription.manage"]}, actor_id=admin_user["id"],
        )
        permission_service.assign_role(db_engine, mod["id"], role["id"], actor_id=admin_user["id"])
        assert content_service.manage_content(db_engine, "packages", "fetch", mod) == {"items": []}


class TestStreamers:
    def test_username_lowercased(self, db_engine, staff_user):
        streamer = _create(db_engine, "twitch_streamers", staff_user, {"username": "  DreamCaster "})
        assert streamer["username"] == "dreamcaster"

    def test_duplicate_username_conflicts(self, db_engine, staff_user):
        _create(db_engine, "twitch_streamers", staff_user, {"username": "DreamCaster"})
        with pytest.raises(ConflictError) as exc:
            _create(db_engine, "twitch_streamers", staff_user, {"username": "dreamcaster"})
        assert exc.value.status_code == 409
        assert len(content_service.list_items(db_engine, "twitch_streamers")) == 1

    def test_rename_onto_existing_username_conflicts(self, db_engine, staff_user):
        _create(db_engine, "twitch_streamers", staff_user, {"username": "first"})
        second = _create(db_engine, "twitch_streamers", staff_user, {"username": "second"})
        with pytest.raises(ConflictError):
            content_service.manage_content(
                db_engine, "twitch_streamers", "update", staff_user,
                item_id=second["id"], data={"username": "FIRST"},
            )


# ===========================================================================
# Email templates
# ===========================================================================
class TestEmailTemplates:
    def test_admin_only(self, db_engine, staff_user):
        with pytest.raises(ForbiddenError):
            content_service.list_email_templates(db_engine, staff_user)
        with pytest.raises(ForbiddenError):
            content_service.upsert_email_template(db_engine, staff_user, {})

    def test_upsert_by_type(self, db_engine, admin_user):
        first = content_service.upsert_email_template(db_engine, admin_user, {
            "template_type": "missed_chat", "subject": "Missed {{visitor_name}}", "body": "<p>hi</p>",
        })
        second = content_service.upsert_email_template(db_engine, admin_user, {
            "template_type": "missed_chat", "subject": "Again", "body": "<p>hey</p>",
        })
        assert first["id"] == second["id"]
        assert [t["subject"] for t in content_service.list_email_templates(db_engine, admin_user)] == ["Again"]

    def test_required_fields(self, db_engine, admin_user):
        with pytest.raises(ValidationError):
            content_service.upsert_email_template(db_engine, admin_user, {"subject": "s", "body": "b"})
        with pytest.raises(ValidationError):
            content_service.upsert_email_template(db_engine, admin_user, {"template_type": "x", "body": "b"})

    def test_delete_missing(self, db_engine, admin_user):
        with pytest.raises(NotFoundError):
            content_service.delete_email_template(db_engine, admin_user, 77)


class TestTemplateRendering:
    def test_placeholders(self):
        rendered = email_service.render_template(
            "Hi {{ username }}, welcome to {{community_name}}{{missing}}!",
            {"username": "kai", "community_name": "Dreamlight RP"},
        )
        assert rendered == "Hi kai, welcome to Dreamlight RP!"

    def test_builtin_used_until_overridden(self, db_engine, admin_user):
        builtin = email_service.resolve_template(db_engine, "missed_chat")
        assert builtin == email_service.BUILTIN_TEMPLATES["missed_chat"]

        content_service.upsert_email_template(db_engine, admin_user, {
            "template_type": "missed_chat", "subject": "Custom", "body": "<p>x</p>",
        })
        assert email_service.resolve_template(db_engine, "missed_chat").subject == "Custom"

        content_service.upsert_email_template(db_engine, admin_user, {
            "template_type": "missed_chat", "subject": "Custom", "body": "<p>x</p>", "is_active": False,
        })
        assert email_service.resolve_template(db_engine, "missed_chat") == builtin

    def test_unknown_template(self, db_engine):
        assert email_service.resolve_template(db_engine, "nothing") is None

    def test_send_without_mailer(self, db_engine):
        sent = asyncio.run(email_service.send_templated(
            db_engine, None, "missed_chat", "staff@dreamlight.gg", {},
        ))
        assert sent is False
