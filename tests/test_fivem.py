"""
tests/test_fivem.py — FiveM Server Query & Stats History
==========================================================
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dreamlight.database.models import ServerPerformanceMetric, ServerStats, utcnow
from dreamlight.errors import ValidationError
from dreamlight.services import fivem_service
from dreamlight.services.settings_service import upsert_setting


def _server(players=None, info=None, dynamic=None, fail=()):
    """MockTransport for a FiveM server; endpoints in *fail* return 500."""
    bodies = {
        "/players.json": players if players is not None else [],
        "/info.json": info if info is not None else {"vars": {"sv_maxClients": "64"}},
        "/dynamic.json": dynamic if dynamic is not None else {"queue": 3},
    }
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.path.lstrip("/") in fail:
            return httpx.Response(500)
        return httpx.Response(200, json=bodies[request.url.path])

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


class TestBuildSnapshot:
    def test_full_payloads(self):
        snap = fivem_service.build_snapshot(
            [{"id": 1}, {"id": 2}], {"vars": {"sv_maxClients": "128"}}, {"queue": "4"}, 37.6,
        )
        assert snap.to_dict() == {
            "online": True,
            "players_online": 2,
            "max_players": 128,
            "queue_count": 4,
            "ping": 38,
            "endpoints": {"players": True, "info": True, "dynamic": True},
        }

    def test_max_players_fallbacks(self):
        assert fivem_service.build_snapshot([], {"maxPlayers": 48}, None, 1).max_players == 48
        assert fivem_service.build_snapshot([], {"vars": {"sv_maxClients": "0"}}, None, 1).max_players == 300
        assert fivem_service.build_snapshot([], None, None, 1).max_players == 300

    def test_offline_when_players_missing(self):
        snap = fivem_service.build_snapshot(None, {"vars": {}}, {"queue": 9}, 20)
        assert snap.online is False
        assert snap.ping == 0
        assert snap.queue_count == 9
        assert snap.endpoints == {"players": False, "info": True, "dynamic": True}


class TestQueryServer:
    def test_scheme_added_and_all_endpoints_hit(self):
        transport = _server(players=[{"id": 1}])
        snap = asyncio.run(fivem_service.query_server("127.0.0.1:30120", transport=transport))
        assert snap.online is True
        assert snap.players_online == 1
        assert snap.max_players == 64
        assert snap.queue_count == 3
        assert sorted(transport.seen) == [
            "http://127.0.0.1:30120/dynamic.json",
            "http://127.0.0.1:30120/info.json",
            "http://127.0.0.1:30120/players.json",
        ]

    def test_partial_failure(self):
        transport = _server(fail=("info.json",))
        snap = asyncio.run(fivem_service.query_server("http://play.example.com/", transport=transport))
        assert snap.online is True
        assert snap.max_players == 300
        assert snap.endpoints["info"] is False

    def test_unreachable_server(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        snap = asyncio.run(fivem_service.query_server(
            "10.0.0.9:30120", transport=httpx.MockTransport(handler),
        ))
        assert snap.online is False
        assert snap.endpoints == {"players": False, "info": False, "dynamic": False}

    def test_blank_address(self):
        with pytest.raises(ValidationError):
            asyncio.run(fivem_service.query_server("  "))

    def test_server_check_does_not_persist(self, db_engine):
        result = asyncio.run(fivem_service.test_server("127.0.0.1:30120", transport=_server()))
        assert result["success"] is True
        assert result["address"] == "127.0.0.1:30120"
        assert result["max_players"] == 64
        assert fivem_service.current_stats(db_engine) is None


class TestPersistence:
    def test_missing_address(self, db_engine):
        with pytest.raises(ValidationError) as exc:
            fivem_service.configured_address(db_engine)
        assert exc.value.message == "Server IP not configured"

    def test_address_from_object_setting(self, db_engine):
        upsert_setting(db_engine, key="server_ip", value={"ip": " 127.0.0.1:30120 "})
        assert fivem_service.configured_address(db_engine) == "127.0.0.1:30120"

    def test_single_stats_row_and_history(self, db_engine):
        upsert_setting(db_engine, key="server_ip", value="127.0.0.1:30120")
        asyncio.run(fivem_service.refresh_server_stats(db_engine, transport=_server(players=[{}, {}])))
        result = asyncio.run(fivem_service.refresh_server_stats(db_engine, transport=_server(players=[{}])))

        assert result["success"] is True
        assert result["stats"]["players_online"] == 1
        assert result["stats"]["uptime_percentage"] == 99.9
        with Session(db_engine) as s:
            assert s.scalar(select(func.count()).select_from(ServerStats)) == 1
            assert s.scalar(select(func.count()).select_from(ServerPerformanceMetric)) == 2

    def test_offline_snapshot_zero_uptime(self, db_engine):
        snap = fivem_service.build_snapshot(None, None, None, None)
        assert fivem_service.save_snapshot(db_engine, snap)["uptime_percentage"] == 0.0


class TestHistory:
    def _record(self, engine, players, online, age):
        with Session(engine) as s:
            s.add(ServerPerformanceMetric(
                players_online=players, max_players=64, ping=40 if online else 0,
                online=online, recorded_at=utcnow() - age,
            ))
            s.commit()

    def test_summary(self, db_engine):
        self._record(db_engine, 10, True, timedelta(hours=1))
        self._record(db_engine, 30, True, timedelta(hours=2))
        self._record(db_engine, 0, False, timedelta(hours=3))
        self._record(db_engine, 99, True, timedelta(hours=30))

        summary = fivem_service.performance_summary(db_engine, hours=24)
        assert summary["samples"] == 3
        assert summary["peak_players"] == 30
        assert summary["average_players"] == pytest.approx(13.3)
        assert summary["uptime_percentage"] == pytest.approx(66.7)

    def test_empty_summary(self, db_engine):
        summary = fivem_service.performance_summary(db_engine)
        assert summary["samples"] == 0
        assert summary["uptime_percentage"] == 0.0

    def test_history_is_chronological(self, db_engine):
        self._record(db_engine, 2, True, timedelta(hours=1))
        self._record(db_engine, 1, True, timedelta(hours=2))
        history = fivem_service.stats_history(db_engine, hours=24)
        assert [h["players_online"] for h in history] == [1, 2]
