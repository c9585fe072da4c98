"""
tests/test_settings.py — server_settings, Kill Switch & Heartbeat
===================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import OWNER_EMAIL, make_user
from dreamlight.database.models import AuditLog, Permission, ServerSetting
from dreamlight.database.seed import DEFAULT_PERMISSIONS, DEFAULT_SETTINGS, seed_defaults
from dreamlight.errors import ForbiddenError, ValidationError
from dreamlight.services import settings_service


class TestSeed:
    def test_defaults_present(self, db_engine):
        keys = {s["key"] for s in settings_service.get_all_settings(db_engine)}
        assert set(DEFAULT_SETTINGS) <= keys

    def test_seed_is_idempotent_and_keeps_edits(self, db_engine):
        settings_service.upsert_setting(db_engine, key="server_ip", value="127.0.0.1:30120")
        seed_defaults(db_engine)
        with Session(db_engine) as s:
            assert s.scalar(select(func.count()).select_from(Permission)) == len(DEFAULT_PERMISSIONS)
            assert s.get(ServerSetting, "server_ip").setting_value == "127.0.0.1:30120"


class TestWrites:
    def test_upsert_is_audited(self, db_engine, admin_user):
        settings_service.upsert_setting(db_engine, key="motd", value={"text": "hi"}, actor_id=admin_user["id"])
        assert settings_service.read_setting(db_engine, "motd") == {"text": "hi"}
        with Session(db_engine) as s:
            entry = s.scalar(select(AuditLog).where(AuditLog.resource_id == "motd"))
            assert entry.action == "create"
            assert entry.new_values == {"value": {"text": "hi"}}

    def test_unchanged_value_not_audited(self, db_engine):
        settings_service.upsert_setting(db_engine, key="motd", value="same")
        settings_service.upsert_setting(db_engine, key="motd", value="same")
        with Session(db_engine) as s:
            count = s.scalar(select(func.count()).select_from(AuditLog).where(AuditLog.resource_id == "motd"))
        assert count == 1

    def test_merge_keeps_other_keys(self, db_engine):
        merged = settings_service.merge_setting(
            db_engine, key="discord_settings", patch={"server_id": "123"},
        )
        assert merged["server_id"] == "123"
        assert merged["role_mappings"] == {}
        assert settings_service.read_setting(db_engine, "discord_settings")["server_id"] == "123"

    def test_merge_rejects_non_object(self, db_engine):
        with pytest.raises(ValidationError):
            settings_service.merge_setting(db_engine, key="discord_settings", patch=["nope"])

    def test_bulk_upsert(self, db_engine):
        count = settings_service.bulk_upsert(db_engine, [
            {"key": "server_ip", "value": "10.0.0.5:30120"},
            {"key": "new_key", "value": [1, 2]},
        ])
        assert count == 2
        assert settings_service.read_setting(db_engine, "new_key") == [1, 2]

    def test_read_missing_returns_default(self, db_engine):
        assert settings_service.read_setting(db_engine, "nope", 5) == 5


class TestKillSwitch:
    def test_owner_can_toggle(self, db_engine):
        owner = make_user(db_engine, OWNER_EMAIL, role="admin")
        assert settings_service.kill_switch_status(db_engine, owner, OWNER_EMAIL) == {"active": False}

        result = settings_service.toggle_kill_switch(db_engine, owner, OWNER_EMAIL, True)
        assert result == {"success": True, "active": True}
        assert settings_service.is_kill_switch_active(db_engine)

        general = settings_service.read_setting(db_engine, "general_settings")
        assert general["server_name"] == "Dreamlight RP"

    def test_other_admin_refused_when_owner_configured(self, db_engine, admin_user):
        with pytest.raises(ForbiddenError):
            settings_service.kill_switch_status(db_engine, admin_user, OWNER_EMAIL)
        with pytest.raises(ForbiddenError):
            settings_service.toggle_kill_switch(db_engine, admin_user, OWNER_EMAIL, True)
        assert not settings_service.is_kill_switch_active(db_engine)

    def test_any_admin_when_no_owner(self, db_engine, admin_user, staff_user):
        assert settings_service.toggle_kill_switch(db_engine, admin_user, None, True)["active"]
        with pytest.raises(ForbiddenError):
            settings_service.toggle_kill_switch(db_engine, staff_user, None, False)


class TestHeartbeat:
    def test_missing_heartbeat_is_offline(self, db_engine):
        assert settings_service.get_bot_heartbeat(db_engine) == {"status": "offline", "last_heartbeat": None}

    def test_fresh_heartbeat_is_online(self, db_engine):
        settings_service.save_bot_heartbeat(db_engine)
        result = settings_service.get_bot_heartbeat(db_engine)
        assert result["status"] == "online"
        assert result["age_seconds"] < 5

    def test_stale_heartbeat_is_offline(self, db_engine):
        stale = (datetime.now(UTC) - timedelta(minutes=5)).isoformat()
        settings_service.upsert_setting(db_engine, key=settings_service.BOT_HEARTBEAT_KEY, value=stale)
        assert settings_service.get_bot_heartbeat(db_engine)["status"] == "offline"
