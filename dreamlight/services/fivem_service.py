"""
dreamlight.services.fivem_service — FiveM Server Query & Stats History
=======================================================================

A FiveM server exposes ``players.json``, ``info.json`` and
``dynamic.json`` over plain HTTP.  The three are fetched concurrently and
each one may fail on its own; whatever came back is folded into a single
stats snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

import httpx
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from dreamlight.constants import DEFAULT_MAX_PLAYERS, ONLINE_UPTIME_PERCENT
from dreamlight.database.engine import run_db
from dreamlight.database.models import ServerPerformanceMetric, ServerStats, utcnow
from dreamlight.errors import ValidationError
from dreamlight.services.audit_service import row_to_dict
from dreamlight.services.settings_service import read_setting

logger = logging.getLogger(__name__)

USER_AGENT = "Dreamlight-RP-Stats"
ENDPOINTS = ("players.json", "info.json", "dynamic.json")


@dataclass(slots=True)
class ServerSnapshot:
    """One poll of a FiveM server."""

    online: bool
    players_online: int
    max_players: int
    queue_count: int
    ping: int
    endpoints: dict[str, bool]

    def to_dict(self) -> dict:
        return asdict(self)


def _base_url(address: str) -> str:
    address = address.strip().rstrip("/")
    if not address:
        raise ValidationError("Server IP is required")
    if "://" not in address:
        address = f"http://{address}"
    return address


async def _timed_get(client: httpx.AsyncClient, url: str) -> tuple[httpx.Response, float]:
    started = time.perf_counter()
    resp = await client.get(url)
    return resp, (time.perf_counter() - started) * 1000


def _json_or_none(result) -> object | None:
    if isinstance(result, BaseException):
        return None
    resp, _ = result
    if resp.status_code != 200:
        return None
    try:
        return resp.json()
    except ValueError:
        return None


def _int(value, default: int) -> int:
    try:
        return int(value) if value not in (None, "", 0, "0") else default
    except (TypeError, ValueError):
        return default


def build_snapshot(players, info, dynamic, ping_ms: float | None) -> ServerSnapshot:
    """Fold the three (possibly ``None``) payloads into a snapshot."""
    online = players is not None
    vars_ = info.get("vars", {}) if isinstance(info, dict) else {}
    max_players = DEFAULT_MAX_PLAYERS
    if isinstance(info, dict):
        max_players = _int(vars_.get("sv_maxClients"), _int(info.get("maxPlayers"), DEFAULT_MAX_PLAYERS))
    queue = _int(dynamic.get("queue"), 0) if isinstance(dynamic, dict) else 0
    return ServerSnapshot(
        online=online,
        players_online=len(players) if isinstance(players, list) else 0,
        max_players=max_players,
        queue_count=queue,
        ping=round(ping_ms) if online and ping_ms is not None else 0,
        endpoints={
            "players": players is not None,
            "info": info is not None,
            "dynamic": dynamic is not None,
        },
    )


async def query_server(
    address: str, *, transport: httpx.AsyncBaseTransport | None = None,
) -> ServerSnapshot:
    base = _base_url(address)
    async with httpx.AsyncClient(
        timeout=10, transport=transport, headers={"User-Agent": USER_AGENT},
    ) as client:
        results = await asyncio.gather(
            *(_timed_get(client, f"{base}/{name}") for name in ENDPOINTS),
            return_exceptions=True,
        )

    for name, result in zip(ENDPOINTS, results):
        if isinstance(result, BaseException):
            logger.debug("%s/%s failed: %s", base, name, result)

    players, info, dynamic = (_json_or_none(r) for r in results)
    ping = None if isinstance(results[0], BaseException) else results[0][1]
    return build_snapshot(players, info, dynamic, ping)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
def save_snapshot(engine, snap: ServerSnapshot) -> dict:
    """Upsert the single ``server_stats`` row and append a history point."""
    now = utcnow()
    with Session(engine, expire_on_commit=False) as session:
        row = session.scalars(select(ServerStats).order_by(ServerStats.id).limit(1)).first()
        if row is None:
            row = ServerStats()
            session.add(row)
        row.players_online = snap.players_online
        row.max_players = snap.max_players
        row.queue_count = snap.queue_count
        row.uptime_percentage = ONLINE_UPTIME_PERCENT if snap.online else 0.0
        row.ping = snap.ping
        row.last_updated = now
        session.add(ServerPerformanceMetric(
            players_online=snap.players_online,
            max_players=snap.max_players,
            queue_count=snap.queue_count,
            ping=snap.ping,
            online=snap.online,
            recorded_at=now,
        ))
        session.commit()
        return row_to_dict(row)


def configured_address(engine) -> str:
    value = read_setting(engine, "server_ip")
    if isinstance(value, dict):
        value = value.get("ip") or value.get("address")
    if not value or not str(value).strip():
        raise ValidationError("Server IP not configured")
    return str(value).strip()


async def refresh_server_stats(
    engine, *, transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    address = await run_db(configured_address, engine)
    snap = await query_server(address, transport=transport)
    stats = await run_db(save_snapshot, engine, snap)
    logger.info(
        "Server stats: %d/%d players, queue %d, online=%s",
        snap.players_online, snap.max_players, snap.queue_count, snap.online,
    )
    return {"success": True, "stats": stats}


async def test_server(
    address: str, *, transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Query *address* without persisting anything."""
    snap = await query_server(address, transport=transport)
    return {"success": snap.online, "address": address, **snap.to_dict()}


def current_stats(engine) -> dict | None:
    with Session(engine) as session:
        row = session.scalars(select(ServerStats).order_by(ServerStats.id).limit(1)).first()
        return row_to_dict(row)


def performance_summary(engine, hours: int = 24, now: datetime | None = None) -> dict:
    now = now or utcnow()
    since = now - timedelta(hours=hours)
    with Session(engine) as session:
        avg_players, peak_players, avg_ping, samples, online = session.execute(
            select(
                func.avg(ServerPerformanceMetric.players_online),
                func.max(ServerPerformanceMetric.players_online),
                func.avg(ServerPerformanceMetric.ping),
                func.count(ServerPerformanceMetric.id),
                func.sum(case((ServerPerformanceMetric.online.is_(True), 1), else_=0)),
            ).where(ServerPerformanceMetric.recorded_at >= since)
        ).one()
    return {
        "hours": hours,
        "samples": samples or 0,
        "average_players": round(float(avg_players or 0), 1),
        "peak_players": peak_players or 0,
        "average_ping": round(float(avg_ping or 0), 1),
        "uptime_percentage": round((online or 0) / samples * 100, 1) if samples else 0.0,
    }


def stats_history(engine, hours: int = 24, limit: int = 500) -> list[dict]:
    since = utcnow() - timedelta(hours=hours)
    with Session(engine) as session:
        rows = session.scalars(
            select(ServerPerformanceMetric)
            .where(ServerPerformanceMetric.recorded_at >= since)
            .order_by(ServerPerformanceMetric.recorded_at)
            .limit(limit)
        ).all()
        return [row_to_dict(r) for r in rows]
