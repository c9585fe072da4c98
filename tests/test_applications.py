"""
tests/test_applications.py — Whitelist Application Workflow
=============================================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import make_user
from dreamlight.database.models import ApplicationRateLimit
from dreamlight.errors import ConflictError, ForbiddenError, NotFoundError, RateLimitedError, ValidationError
from dreamlight.services import application_service as apps
from dreamlight.services.settings_service import merge_setting

FORM_FIELDS = [
    {"key": "age", "label": "Age", "type": "number", "required": True},
    {"key": "backstory", "label": "Backstory", "type": "textarea", "required": True},
    {"key": "contact", "label": "Contact email", "type": "email"},
]

VALID_FORM = {
    "discord_name": "player#0001",
    "steam_name": "PlayerOne",
    "age": "21",
    "backstory": "Came to the city for a fresh start.",
}


@pytest.fixture
def app_type(db_engine, admin_user) -> dict:
    return apps.create_type(
        db_engine, {"name": "Whitelist", "form_fields": FORM_FIELDS}, actor_id=admin_user["id"],
    )


def _submit(engine, user, type_id, form=None, ip=None):
    return apps.create_application(engine, user, type_id, dict(form or VALID_FORM), ip_address=ip)


# ===========================================================================
# Pure helpers
# ===========================================================================
class TestFormValidation:
    def test_discord_field_always_first_and_unique(self):
        fields = apps.ensure_discord_field([
            {"key": "age"}, {"key": "discord_name", "label": "Mine"},
        ])
        assert [apps.field_key(f) for f in fields] == ["discord_name", "age"]
        assert fields[0]["system"] is True

    def test_required_fields(self):
        fields = apps.ensure_discord_field(FORM_FIELDS)
        errors = apps.validate_form_data(fields, {"age": "  ", "backstory": "ok"})
        assert set(errors) == {"discord_name", "age"}
        assert errors["age"] == "Age is required"

    def test_unchecked_checkbox_counts_as_missing(self):
        fields = [{"key": "agree", "label": "Agree", "type": "checkbox", "required": True}]
        assert "agree" in apps.validate_form_data(fields, {"agree": False})
        assert apps.validate_form_data(fields, {"agree": True}) == {}

    def test_email_and_number_formats(self):
        fields = [
            {"key": "contact", "type": "email"},
            {"key": "age", "type": "number"},
        ]
        errors = apps.validate_form_data(fields, {"contact": "nope", "age": "twenty"})
        assert errors == {
            "contact": "Please enter a valid email address",
            "age": "Please enter a valid number",
        }
        assert apps.validate_form_data(fields, {"contact": "a@b.co", "age": "20.5"}) == {}

    @pytest.mark.parametrize(
        "fields",
        [
            [{"key": ""}],
            [{"key": "a"}, {"key": "a"}],
            [{"key": "a", "type": "colour"}],
            [{"key": "a", "type": "select"}],
        ],
    )
    def test_bad_field_definitions(self, fields):
        with pytest.raises(ValidationError):
            apps.validate_field_definitions(fields)


class TestTransitions:
    @pytest.mark.parametrize(
        "current, new, allowed",
        [
            ("pending", "under_review", True),
            ("pending", "approved", True),
            ("pending", "rejected", True),
            ("under_review", "pending", True),
            ("under_review", "approved", True),
            ("approved", "rejected", False),
            ("rejected", "pending", False),
            ("pending", "pending", False),
        ],
    )
    def test_can_transition(self, current, new, allowed):
        assert apps.can_transition(current, new) is allowed


class TestStats:
    NOW = datetime(2026, 6, 15, tzinfo=UTC)

    def _app(self, status, days_ago):
        return {
            "id": days_ago,
            "status": status,
            "created_at": (self.NOW - timedelta(days=days_ago)).isoformat(),
        }

    def test_counts_and_rate(self):
        data = [
            self._app("approved", 1),
            self._app("approved", 2),
            self._app("approved", 20),
            self._app("rejected", 3),
            self._app("pending", 30),
            self._app("under_review", 0),
        ]
        stats = apps.calculate_stats(data, self.NOW)
        assert stats == {
            "total": 6,
            "pending": 1,
            "approved": 3,
            "rejected": 1,
            "under_review": 1,
            "recent_count": 4,
            "approval_rate": 75,
        }

    def test_no_processed_applications(self):
        assert apps.calculate_stats([self._app("pending", 1)], self.NOW)["approval_rate"] == 0

    def test_report_shape(self):
        report = apps.generate_report([self._app("approved", 1)], self.NOW)
        assert report["summary"]["approval_rate"] == "100%"
        assert report["status_breakdown"]["approved"] == 1
        assert report["applications"][0]["applicant"] == "Unknown"


# ===========================================================================
# Types
# ===========================================================================
class TestApplicationTypes:
    def test_create_adds_discord_field(self, app_type):
        assert app_type["form_fields"][0]["key"] == "discord_name"

    def test_name_required(self, db_engine):
        with pytest.raises(ValidationError):
            apps.create_type(db_engine, {"name": "  "}, actor_id=None)

    def test_inactive_types_hidden_from_public(self, db_engine, app_type):
        apps.update_type(db_engine, app_type["id"], {"is_active": False}, actor_id=None)
        assert apps.list_types(db_engine) == []
        assert len(apps.list_types(db_engine, active_only=False)) == 1

    def test_type_with_submissions_cannot_be_deleted(self, db_engine, app_type, player):
        _submit(db_engine, player, app_type["id"])
        with pytest.raises(ConflictError):
            apps.delete_type(db_engine, app_type["id"], actor_id=None)


# ===========================================================================
# Submission rules
# ===========================================================================
class TestSubmission:
    def test_stores_pending_application(self, db_engine, app_type, player):
        app = _submit(db_engine, player, app_type["id"], ip="203.0.113.10")
        assert app["status"] == "pending"
        assert app["discord_name"] == "player#0001"
        assert app["steam_name"] == "PlayerOne"
        assert app["application_type_name"] == "Whitelist"
        assert app["ip_address"] == "203.0.113.10"

    def test_validation_errors_listed(self, db_engine, app_type, player):
        with pytest.raises(ValidationError) as exc:
            _submit(db_engine, player, app_type["id"], form={"discord_name": "x"})
        assert set(exc.value.extra["fields"]) == {"age", "backstory"}

    def test_closed_intake(self, db_engine, app_type, player):
        merge_setting(db_engine, key="application_settings", patch={"accept_applications": False})
        with pytest.raises(ForbiddenError):
            _submit(db_engine, player, app_type["id"])

    def test_unknown_type(self, db_engine, player):
        with pytest.raises(NotFoundError):
            _submit(db_engine, player, 999)

    def test_one_open_application_per_type(self, db_engine, app_type, player):
        _submit(db_engine, player, app_type["id"])
        with pytest.raises(ConflictError):
            _submit(db_engine, player, app_type["id"])

    def test_multiple_allowed_by_setting(self, db_engine, app_type, player):
        merge_setting(db_engine, key="application_settings", patch={"multiple_applications_allowed": True})
        _submit(db_engine, player, app_type["id"])
        _submit(db_engine, player, app_type["id"])
        assert len(apps.my_applications(db_engine, player["id"])) == 2

    def test_cooldown_after_rejection(self, db_engine, app_type, player, admin_user):
        app = _submit(db_engine, player, app_type["id"])
        apps.set_status(db_engine, app["id"], "rejected", notes="Too short", reviewer_id=admin_user["id"])
        with pytest.raises(ConflictError) as exc:
            _submit(db_engine, player, app_type["id"])
        assert "available_at" in exc.value.extra

        merge_setting(db_engine, key="application_settings", patch={"cooldown_days": 0})
        assert _submit(db_engine, player, app_type["id"])["status"] == "pending"

    def test_per_ip_limit(self, db_engine, app_type):
        merge_setting(db_engine, key="application_settings", patch={"multiple_applications_allowed": True})
        applicant = make_user(db_engine, "busy@example.com")
        for _ in range(3):
            _submit(db_engine, applicant, app_type["id"], ip="198.51.100.77")
        with pytest.raises(RateLimitedError):
            _submit(db_engine, applicant, app_type["id"], ip="198.51.100.77")

    def test_rejected_submissions_keep_ip_budget(self, db_engine, app_type, player):
        for _ in range(4):
            with pytest.raises(ValidationError):
                _submit(db_engine, player, app_type["id"], form={"age": ""}, ip="198.51.100.78")
        assert _submit(db_engine, player, app_type["id"], ip="198.51.100.78")["status"] == "pending"
        with pytest.raises(ConflictError):
            _submit(db_engine, player, app_type["id"], ip="198.51.100.78")

        with Session(db_engine) as s:
            budget = s.scalar(select(ApplicationRateLimit.submission_count).where(
                ApplicationRateLimit.ip_address == "198.51.100.78"))
        assert budget == 1

    def test_async_submit_without_webhook(self, db_engine, app_type, player):
        app = asyncio.run(apps.submit_application(db_engine, player, app_type["id"], dict(VALID_FORM)))
        assert app["status"] == "pending"


# ===========================================================================
# Review
# ===========================================================================
class TestReview:
    def test_status_change_records_reviewer(self, db_engine, app_type, player, staff_user):
        app = _submit(db_engine, player, app_type["id"])
        updated, applicant = apps.set_status(
            db_engine, app["id"], "under_review", notes="Looking", reviewer_id=staff_user["id"],
        )
        assert updated["status"] == "under_review"
        assert updated["reviewed_by"] == staff_user["id"]
        assert updated["review_notes"] == "Looking"
        assert applicant["email"] == player["email"]

    def test_terminal_status_is_final(self, db_engine, app_type, player, staff_user):
        app = _submit(db_engine, player, app_type["id"])
        apps.set_status(db_engine, app["id"], "approved", notes=None, reviewer_id=staff_user["id"])
        with pytest.raises(ConflictError):
            apps.set_status(db_engine, app["id"], "rejected", notes=None, reviewer_id=staff_user["id"])

    def test_invalid_status(self, db_engine, app_type, player):
        app = _submit(db_engine, player, app_type["id"])
        with pytest.raises(ValidationError):
            apps.set_status(db_engine, app["id"], "maybe", notes=None, reviewer_id=None)

    def test_closed_application_frozen_until_reopened(self, db_engine, app_type, player, staff_user):
        app = _submit(db_engine, player, app_type["id"])
        apps.set_status(db_engine, app["id"], "approved", notes=None, reviewer_id=staff_user["id"])
        closed = apps.close_application(db_engine, app["id"], actor_id=staff_user["id"])
        assert closed["closed"] is True
        with pytest.raises(ConflictError):
            apps.close_application(db_engine, app["id"], actor_id=staff_user["id"])
        with pytest.raises(ConflictError):
            apps.set_status(db_engine, app["id"], "under_review", notes=None, reviewer_id=None)

        reopened = apps.reopen_application(db_engine, app["id"], actor_id=staff_user["id"])
        assert reopened["closed"] is False
        assert reopened["status"] == "pending"

    def test_review_without_mailer(self, db_engine, app_type, player, staff_user, panel_config):
        app = _submit(db_engine, player, app_type["id"])
        result = asyncio.run(apps.review_application(
            db_engine, None, app["id"], "approved",
            notes="Welcome", reviewer=staff_user, community_name=panel_config.community_name,
        ))
        assert result["status"] == "approved"


class TestListing:
    def test_filters(self, db_engine, app_type, player, staff_user):
        merge_setting(db_engine, key="application_settings", patch={"multiple_applications_allowed": True})
        first = _submit(db_engine, player, app_type["id"])
        _submit(db_engine, player, app_type["id"], form={**VALID_FORM, "discord_name": "other#9999"})
        apps.set_status(db_engine, first["id"], "approved", notes=None, reviewer_id=staff_user["id"])

        assert len(apps.list_applications(db_engine)) == 2
        assert [a["id"] for a in apps.list_applications(db_engine, status="approved")] == [first["id"]]
        assert len(apps.list_applications(db_engine, search="OTHER#")) == 1
        assert len(apps.list_applications(db_engine, search="player@example")) == 2
        assert len(apps.list_applications(db_engine, date_range="7days")) == 2

        apps.close_application(db_engine, first["id"], actor_id=staff_user["id"])
        assert len(apps.list_applications(db_engine, include_closed=False)) == 1

    def test_get_application(self, db_engine, app_type, player):
        app = _submit(db_engine, player, app_type["id"])
        fetched = apps.get_application(db_engine, app["id"])
        assert fetched["applicant_email"] == player["email"]
        with pytest.raises(NotFoundError):
            apps.get_application(db_engine, 999)
