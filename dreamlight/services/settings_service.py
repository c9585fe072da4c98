"""
dreamlight.services.settings_service — server_settings CRUD & Kill Switch
==========================================================================

Typed read/write access to the ``server_settings`` table.  Values are
whole JSON documents keyed by name (``general_settings``,
``discord_settings``, …).  Every write is recorded in ``audit_logs``.

The kill switch is a flag inside ``general_settings``; only the
configured owner account may read or flip it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dreamlight.database.models import ServerSetting
from dreamlight.errors import ForbiddenError, ValidationError
from dreamlight.services.audit_service import log_action

logger = logging.getLogger(__name__)

BOT_HEARTBEAT_KEY = "bot_heartbeat"
BOT_OFFLINE_AFTER_SECONDS = 90


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_setting_value(session: Session, key: str, default=None):
    """Read a single setting's value from an existing session.

    Returns *default* when the key does not exist or holds ``null``.
    """
    row = session.get(ServerSetting, key)
    if row is None or row.setting_value is None:
        return default
    return row.setting_value


def get_setting_dict(session: Session, key: str) -> dict:
    """Like :func:`get_setting_value` but always returns a dict."""
    value = get_setting_value(session, key, {})
    return value if isinstance(value, dict) else {}


def read_setting(engine, key: str, default=None):
    """Standalone read, for callers without an open session."""
    with Session(engine) as session:
        return get_setting_value(session, key, default)


def get_all_settings(engine) -> list[dict]:
    """Every setting row, ordered by key."""
    with Session(engine) as session:
        rows = session.scalars(
            select(ServerSetting).order_by(ServerSetting.setting_key)
        ).all()
        return [
            {
                "key": r.setting_key,
                "value": r.setting_value,
                "description": r.description,
                "updated_by": r.updated_by,
                "updated_at": r.updated_at.isoformat() if r.updated_at else None,
            }
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def _write(session: Session, key: str, value: Any, actor_id: str | None) -> None:
    existing = session.get(ServerSetting, key)
    before = {"value": existing.setting_value} if existing else None
    if existing:
        existing.setting_value = value
        existing.updated_by = actor_id
    else:
        session.add(ServerSetting(setting_key=key, setting_value=value, updated_by=actor_id))
    if before != {"value": value}:
        log_action(
            session,
            actor_id=actor_id,
            action="update" if before else "create",
            resource_type="server_settings",
            resource_id=key,
            before=before,
            after={"value": value},
        )


def upsert_setting(engine, *, key: str, value: Any, actor_id: str | None = None) -> None:
    """Insert or replace a setting value."""
    with Session(engine) as session:
        _write(session, key, value, actor_id)
        session.commit()
    logger.info("Setting %s updated by %s", key, actor_id or "system")


def merge_setting(
    engine, *, key: str, patch: dict[str, Any], actor_id: str | None = None,
) -> dict:
    """Shallow-merge *patch* into a dict-valued setting and return the result."""
    if not isinstance(patch, dict):
        raise ValidationError("Setting patch must be an object")
    with Session(engine) as session:
        merged = {**get_setting_dict(session, key), **patch}
        _write(session, key, merged, actor_id)
        session.commit()
    return merged


def bulk_upsert(engine, settings: list[dict], *, actor_id: str | None = None) -> int:
    """Upsert many ``{"key", "value"}`` items in one transaction."""
    count = 0
    with Session(engine) as session:
        for item in settings:
            _write(session, item["key"], item["value"], actor_id)
            count += 1
        session.commit()
    return count


# ---------------------------------------------------------------------------
# Kill switch
# ---------------------------------------------------------------------------
def _check_kill_switch_owner(user: dict, owner_email: str | None) -> None:
    if owner_email:
        if (user.get("email") or "").lower() != owner_email.lower():
            raise ForbiddenError("Unauthorized access")
    elif user.get("role") != "admin":
        raise ForbiddenError("Unauthorized access")


def kill_switch_status(engine, user: dict, owner_email: str | None) -> dict:
    _check_kill_switch_owner(user, owner_email)
    with Session(engine) as session:
        general = get_setting_dict(session, "general_settings")
    return {"active": bool(general.get("kill_switch_active", False))}


def toggle_kill_switch(engine, user: dict, owner_email: str | None, active: bool) -> dict:
    """Set ``general_settings.kill_switch_active``, preserving the other keys."""
    _check_kill_switch_owner(user, owner_email)
    merge_setting(
        engine,
        key="general_settings",
        patch={"kill_switch_active": bool(active)},
        actor_id=user.get("id"),
    )
    logger.warning(
        "Kill switch %s by %s", "ACTIVATED" if active else "deactivated", user.get("email"),
    )
    return {"success": True, "active": bool(active)}


def is_kill_switch_active(engine) -> bool:
    general = read_setting(engine, "general_settings", {}) or {}
    return bool(general.get("kill_switch_active", False))


# ---------------------------------------------------------------------------
# Bot heartbeat
# ---------------------------------------------------------------------------
def save_bot_heartbeat(engine) -> None:
    """Write the current UTC timestamp (called every ~30s by the bot)."""
    ts = datetime.now(UTC).isoformat()
    with Session(engine) as session:
        row = session.get(ServerSetting, BOT_HEARTBEAT_KEY)
        if row is None:
            session.add(ServerSetting(
                setting_key=BOT_HEARTBEAT_KEY, setting_value=ts,
                description="Bot last-alive heartbeat",
            ))
        else:
            row.setting_value = ts
        session.commit()


def get_bot_heartbeat(engine) -> dict:
    """Return the bot heartbeat status for the health endpoint."""
    ts_str = read_setting(engine, BOT_HEARTBEAT_KEY)
    if not ts_str:
        return {"status": "offline", "last_heartbeat": None}
    try:
        ts = datetime.fromisoformat(ts_str)
    except (TypeError, ValueError):
        return {"status": "offline", "last_heartbeat": None}
    age = (datetime.now(UTC) - ts).total_seconds()
    return {
        "status": "online" if age < BOT_OFFLINE_AFTER_SECONDS else "offline",
        "last_heartbeat": ts_str,
        "age_seconds": int(age),
    }
