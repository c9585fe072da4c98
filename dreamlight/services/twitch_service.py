"""
dreamlight.services.twitch_service — Live status for featured streamers
"""

from __future__ import annotations

import logging
import os

import httpx

from dreamlight.database.engine import run_db
from dreamlight.errors import UpstreamError
from dreamlight.services.content_service import list_items

logger = logging.getLogger(__name__)

TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
TWITCH_STREAMS_URL = "https://api.twitch.tv/helix/streams"
MAX_LOGINS_PER_REQUEST = 100


def _credentials() -> tuple[str, str]:
    client_id = os.getenv("TWITCH_CLIENT_ID", "").strip()
    client_secret = os.getenv("TWITCH_CLIENT_SECRET", "").strip()
    if not client_id or not client_secret:
        raise UpstreamError("Missing Twitch credentials")
    return client_id, client_secret


def chunked(items: list[str], size: int = MAX_LOGINS_PER_REQUEST) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def offline_entry() -> dict:
    return {
        "is_live": False,
        "viewer_count": 0,
        "game_name": "",
        "title": "",
        "started_at": "",
        "thumbnail_url": "",
    }


async def get_app_token(client: httpx.AsyncClient, client_id: str, client_secret: str) -> str:
    """Client-credentials app token; fetched fresh on every call."""
    resp = await client.post(TWITCH_TOKEN_URL, data={
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "client_credentials",
    })
    if resp.status_code != 200:
        logger.error("Twitch token request failed: %s %s", resp.status_code, resp.text)
        raise UpstreamError("Failed to authenticate with Twitch API")
    return resp.json()["access_token"]


async def get_streams(
    client: httpx.AsyncClient, token: str, client_id: str, logins: list[str],
) -> list[dict]:
    streams: list[dict] = []
    for chunk in chunked(logins):
        resp = await client.get(
            TWITCH_STREAMS_URL,
            params=[("user_login", login) for login in chunk],
            headers={"Authorization": f"Bearer {token}", "Client-Id": client_id},
        )
        if resp.status_code != 200:
            logger.error("Twitch streams request failed: %s %s", resp.status_code, resp.text)
            raise UpstreamError("Failed to fetch stream data from Twitch API")
        streams.extend(resp.json().get("data", []))
    return streams


async def fetch_streams(engine, *, transport: httpx.AsyncBaseTransport | None = None) -> dict:
    """Active streamers plus ``stream_data`` keyed by lowercase login."""
    streamers = await run_db(list_items, engine, "twitch_streamers", active_only=True)
    if not streamers:
        return {"streamers": [], "stream_data": {}}

    client_id, client_secret = _credentials()
    logins = [s["username"].lower() for s in streamers]
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        token = await get_app_token(client, client_id, client_secret)
        live = await get_streams(client, token, client_id, logins)

    stream_data = {login: offline_entry() for login in logins}
    for stream in live:
        stream_data[stream["user_login"].lower()] = {
            "is_live": True,
            "viewer_count": stream.get("viewer_count", 0),
            "game_name": stream.get("game_name", ""),
            "title": stream.get("title", ""),
            "started_at": stream.get("started_at", ""),
            "thumbnail_url": stream.get("thumbnail_url", ""),
        }
    logger.info("Twitch: %d of %d streamers live", len(live), len(streamers))
    return {"streamers": streamers, "stream_data": stream_data}
