"""
tests/test_rate_limit.py — Staff Mutation Rate Limiting
=========================================================
Staff write endpoints are limited to a fixed number of mutations per
rolling minute per account, answering 429 with a Retry-After header.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from conftest import auth, make_session, make_user
from dreamlight.api.rate_limit import StaffRateLimiter, configure_rate_limiter
from dreamlight.database.models import StaffRateLimitEvent, utcnow


# ---------------------------------------------------------------------------
# Unit tests for the StaffRateLimiter core (DB-backed)
# ---------------------------------------------------------------------------
class TestStaffRateLimiter:
    @pytest.fixture(autouse=True)
    def _limiter(self, db_engine):
        self.limiter = StaffRateLimiter(max_requests=3, window_seconds=60, engine=db_engine)
        self.engine = db_engine

    def test_allows_up_to_limit(self):
        results = [self.limiter.hit("staff-1") for _ in range(3)]
        assert all(allowed for allowed, _ in results)
        assert [info["remaining"] for _, info in results] == [2, 1, 0]

    def test_blocks_after_limit(self):
        for _ in range(3):
            self.limiter.hit("staff-1")
        allowed, info = self.limiter.hit("staff-1")
        assert not allowed
        assert info["remaining"] == 0
        assert info["limit"] == 3
        assert 1 <= info["reset"] <= 61

    def test_rejected_hits_are_not_recorded(self):
        for _ in range(6):
            self.limiter.hit("staff-1")
        with Session(self.engine) as s:
            count = s.scalar(select(func.count()).select_from(StaffRateLimitEvent))
        assert count == 3

    def test_separate_staff_have_separate_limits(self):
        for _ in range(3):
            self.limiter.hit("staff-1")
        assert not self.limiter.hit("staff-1")[0]
        assert self.limiter.hit("staff-2")[0]

    def test_old_events_fall_out_of_window(self):
        for _ in range(3):
            self.limiter.hit("staff-1")
        with Session(self.engine) as s:
            s.execute(update(StaffRateLimitEvent).values(timestamp=utcnow() - timedelta(minutes=2)))
            s.commit()
        allowed, info = self.limiter.hit("staff-1")
        assert allowed
        assert info["remaining"] == 2

    def test_reset_one_or_all(self):
        for staff_id in ("staff-1", "staff-1", "staff-1", "staff-2", "staff-2", "staff-2"):
            self.limiter.hit(staff_id)

        self.limiter.reset("staff-1")
        assert self.limiter.hit("staff-1")[0]
        assert not self.limiter.hit("staff-2")[0]

        self.limiter.reset()
        assert self.limiter.hit("staff-2")[0]


# ---------------------------------------------------------------------------
# Integration tests with FastAPI TestClient
# ---------------------------------------------------------------------------
class TestRateLimitedEndpoints:
    @pytest.fixture
    def staff_headers(self, db_engine, client):
        configure_rate_limiter(engine=db_engine, max_requests=3)
        staff = make_user(db_engine, "mod@dreamlight.gg", role="moderator")
        return auth(make_session(db_engine, staff["id"]))

    def _fetch_rules(self, client, headers):
        return client.post("/api/manage/rules", headers=headers, json={"action": "fetch"})

    def test_mutations_limited(self, client, staff_headers):
        for _ in range(3):
            assert self._fetch_rules(client, staff_headers).status_code == 200

        resp = self._fetch_rules(client, staff_headers)
        assert resp.status_code == 429
        body = resp.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["retry_after"] >= 1
        assert resp.headers["Retry-After"] == str(body["retry_after"])

    def test_reads_not_limited(self, client, staff_headers):
        for _ in range(5):
            assert client.get("/api/chat/sessions", headers=staff_headers).status_code == 200

    def test_public_paths_not_limited(self, client, staff_headers):
        for _ in range(5):
            assert client.get("/api/rules").status_code == 200

    def test_each_staff_member_counted_separately(self, db_engine, client, staff_headers):
        for _ in range(3):
            self._fetch_rules(client, staff_headers)
        other = make_user(db_engine, "mod2@dreamlight.gg", role="moderator")
        other_headers = auth(make_session(db_engine, other["id"]))

        assert self._fetch_rules(client, staff_headers).status_code == 429
        assert self._fetch_rules(client, other_headers).status_code == 200

    def test_non_staff_rejected_before_counting(self, db_engine, client, staff_headers, player):
        headers = auth(make_session(db_engine, player["id"]))
        assert self._fetch_rules(client, headers).status_code == 403
        with Session(db_engine) as s:
            assert s.scalar(select(func.count()).select_from(StaffRateLimitEvent)) == 0
