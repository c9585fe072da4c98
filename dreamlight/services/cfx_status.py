"""
dreamlight.services.cfx_status — Cfx.re Platform Status
========================================================

Reads the public status-page Atom feed and reduces the newest incident
to one of ``operational``, ``maintenance``, ``degraded`` or ``outage``.
Incidents older than a day no longer affect the current status.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta

import httpx

from dreamlight.database.models import as_utc, utcnow
from dreamlight.errors import UpstreamError

logger = logging.getLogger(__name__)

CFX_FEED_URL = "https://status.cfx.re/history.atom"
ATOM = "{http://www.w3.org/2005/Atom}"
INCIDENT_WINDOW = timedelta(hours=24)

# First match wins
KEYWORD_STATUSES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("resolved", "fixed", "completed"), "operational"),
    (("maintenance", "scheduled"), "maintenance"),
    (("outage", "down"), "outage"),
    (("degraded", "slow", "issue", "investigating"), "degraded"),
)


def classify_title(title: str) -> str:
    lowered = title.lower()
    for keywords, status in KEYWORD_STATUSES:
        if any(k in lowered for k in keywords):
            return status
    return "operational"


def _parse_time(text: str | None) -> datetime | None:
    if not text:
        return None
    try:
        return as_utc(datetime.fromisoformat(text.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _text(el: ET.Element | None, tag: str) -> str:
    if el is None:
        return ""
    child = el.find(f"{ATOM}{tag}")
    if child is None:
        child = el.find(tag)
    return (child.text or "").strip() if child is not None else ""


def _link(entry: ET.Element) -> str:
    link = entry.find(f"{ATOM}link")
    if link is None:
        link = entry.find("link")
    return link.get("href", "") if link is not None else ""


def parse_feed(xml_text: str, now: datetime | None = None) -> dict:
    """Reduce an Atom feed to ``{overall_status, last_incident, last_updated}``.

    Raises :class:`ValueError` for text that is not XML.
    """
    now = now or utcnow()
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid CFX status feed: {exc}") from exc

    feed_updated = _text(root, "updated") or now.isoformat()
    entries = root.findall(f"{ATOM}entry") or root.findall("entry")
    if not entries:
        return {"overall_status": "operational", "last_incident": None, "last_updated": feed_updated}

    latest = entries[0]
    incident = {
        "title": _text(latest, "title"),
        "updated": _text(latest, "updated"),
        "link": _link(latest),
        "summary": _text(latest, "summary"),
    }

    incident_time = _parse_time(incident["updated"])
    if incident_time is not None and now - incident_time > INCIDENT_WINDOW:
        status = "operational"
    else:
        status = classify_title(incident["title"])

    return {"overall_status": status, "last_incident": incident, "last_updated": feed_updated}


async def fetch_feed(*, transport: httpx.AsyncBaseTransport | None = None) -> str:
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        resp = await client.get(CFX_FEED_URL)
    if resp.status_code != 200:
        raise UpstreamError(f"CFX status API returned {resp.status_code}")
    return resp.text


async def get_status(*, transport: httpx.AsyncBaseTransport | None = None) -> dict:
    """Current platform status; ``unknown`` with the error when unreachable."""
    try:
        return parse_feed(await fetch_feed(transport=transport))
    except (UpstreamError, httpx.HTTPError, ValueError) as exc:
        logger.warning("CFX status unavailable: %s", exc)
        return {
            "overall_status": "unknown",
            "last_incident": None,
            "last_updated": utcnow().isoformat(),
            "error": str(exc),
        }
