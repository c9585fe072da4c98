"""
tests/test_security.py — Audit Trail, Failed Logins & IP Limits
=================================================================
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import make_session
from dreamlight.database.models import ApplicationRateLimit, FailedLoginAttempt, utcnow
from dreamlight.services import security_service


class TestFailedLogins:
    def test_counts_per_ip(self, db_engine):
        first = security_service.track_failed_login(db_engine, "203.0.113.1", "a@example.com")
        second = security_service.track_failed_login(db_engine, "203.0.113.1", "a@example.com")
        other = security_service.track_failed_login(db_engine, "203.0.113.2")
        assert first == {"attempt_count": 1, "blocked": False}
        assert second == {"attempt_count": 2, "blocked": False}
        assert other["attempt_count"] == 1

    def test_blocks_at_threshold(self, db_engine):
        for _ in range(4):
            assert not security_service.track_failed_login(db_engine, "203.0.113.3")["blocked"]
        result = security_service.track_failed_login(db_engine, "203.0.113.3")
        assert result == {"attempt_count": 5, "blocked": True}
        assert security_service.is_ip_blocked(db_engine, "203.0.113.3")
        assert not security_service.is_ip_blocked(db_engine, "203.0.113.4")

    def test_block_expires(self, db_engine):
        for _ in range(5):
            security_service.track_failed_login(db_engine, "203.0.113.5")
        with Session(db_engine) as s:
            row = s.scalar(select(FailedLoginAttempt).where(FailedLoginAttempt.ip_address == "203.0.113.5"))
            row.blocked_until = utcnow() - timedelta(minutes=1)
            s.commit()
        assert not security_service.is_ip_blocked(db_engine, "203.0.113.5")

    def test_missing_ip_is_ignored(self, db_engine):
        assert security_service.track_failed_login(db_engine, None) == {"attempt_count": 0, "blocked": False}
        assert not security_service.is_ip_blocked(db_engine, None)


class TestApplicationRateLimit:
    def test_three_per_window(self, db_engine):
        results = [security_service.check_rate_limit(db_engine, "198.51.100.1") for _ in range(4)]
        assert [r["allowed"] for r in results] == [True, True, True, False]
        assert results[2]["count"] == 3
        assert results[3]["count"] == 3
        assert results[3]["limit"] == 3
        assert "reset_time" in results[3]

    def test_rejected_request_does_not_move_counter(self, db_engine):
        for _ in range(5):
            security_service.check_rate_limit(db_engine, "198.51.100.2")
        with Session(db_engine) as s:
            row = s.scalar(select(ApplicationRateLimit).where(ApplicationRateLimit.ip_address == "198.51.100.2"))
            assert row.submission_count == 3

    def test_new_window_after_expiry(self, db_engine):
        for _ in range(3):
            security_service.check_rate_limit(db_engine, "198.51.100.3")
        with Session(db_engine) as s:
            row = s.scalar(select(ApplicationRateLimit).where(ApplicationRateLimit.ip_address == "198.51.100.3"))
            row.window_start = utcnow() - timedelta(hours=25)
            s.commit()
        result = security_service.check_rate_limit(db_engine, "198.51.100.3")
        assert result["allowed"] is True
        assert result["count"] == 1

    def test_other_types_unlimited(self, db_engine):
        for _ in range(10):
            assert security_service.check_rate_limit(db_engine, "198.51.100.4", "login")["allowed"]
        assert security_service.check_rate_limit(db_engine, None)["allowed"]


class TestAuditLog:
    def test_write_and_read_back_newest_first(self, db_engine, admin_user):
        security_service.log_audit_event(
            db_engine, actor_id=admin_user["id"], action="first", resource_type="test",
        )
        security_service.log_audit_event(
            db_engine, actor_id=admin_user["id"], action="second", resource_type="test",
            resource_id="7", new_values={"a": 1}, ip_address="203.0.113.7",
        )
        logs = security_service.get_audit_logs(db_engine, 10, resource_type="test")
        assert [entry["action"] for entry in logs] == ["second", "first"]
        assert logs[0]["new_values"] == {"a": 1}
        assert logs[0]["ip_address"] == "203.0.113.7"

    def test_filters_by_actor(self, db_engine, admin_user, staff_user):
        security_service.log_audit_event(db_engine, actor_id=admin_user["id"], action="a", resource_type="x")
        security_service.log_audit_event(db_engine, actor_id=staff_user["id"], action="b", resource_type="x")
        logs = security_service.get_audit_logs(db_engine, actor_id=staff_user["id"])
        assert [entry["action"] for entry in logs] == ["b"]


class TestSessionsAndStats:
    def test_cleanup_expired_sessions(self, db_engine, player):
        make_session(db_engine, player["id"], expires_in=timedelta(hours=-1))
        make_session(db_engine, player["id"], expires_in=timedelta(hours=-2))
        make_session(db_engine, player["id"])
        assert security_service.cleanup_expired_sessions(db_engine) == 2
        assert security_service.cleanup_expired_sessions(db_engine) == 0

    def test_security_stats(self, db_engine, player):
        make_session(db_engine, player["id"])
        for _ in range(5):
            security_service.track_failed_login(db_engine, "203.0.113.50")
        security_service.log_audit_event(db_engine, actor_id=None, action="x", resource_type="y")

        stats = security_service.get_security_stats(db_engine)
        assert stats["active_sessions"] == 1
        assert stats["failed_logins_24h"] == 5
        assert stats["blocked_ips"] == 1
        assert stats["audit_events_24h"] >= 1
