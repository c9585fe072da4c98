"""
dreamlight.database.seed — Default Settings & Permission Seeder
================================================================

Baseline ``server_settings`` rows and the permission catalogue, seeded
on first startup so the dashboard works before anyone configures it.

Idempotent — only inserts keys that don't already exist.  Values edited
from the dashboard are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from dreamlight.constants import DEFAULT_MISSED_CHAT_TIMEOUT_MINUTES
from dreamlight.database.models import Permission, ServerSetting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default server_settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str]] = {
    "general_settings": (
        {"server_name": "Dreamlight RP", "maintenance_mode": False, "kill_switch_active": False},
        "Site-wide switches, including the emergency kill switch",
    ),
    "notification_settings": (
        {"missed_chat_timeout": DEFAULT_MISSED_CHAT_TIMEOUT_MINUTES, "email_staff_on_missed_chat": True},
        "Live-chat alerting",
    ),
    "discord_settings": (
        {"server_id": "", "auto_roles": False, "role_mappings": {}, "webhook_url": ""},
        "Guild ID, role mappings and webhook used for logs",
    ),
    "application_settings": (
        {"accept_applications": True, "multiple_applications_allowed": False, "cooldown_days": 7},
        "Whitelist application intake",
    ),
    "server_ip": ("", "FiveM server address (host:port) polled for player counts"),
}
"""Each entry maps ``setting_key`` → ``(default_value, description)``."""

DEFAULT_PERMISSIONS: dict[str, tuple[str, str]] = {
    "applications.review": ("applications", "Review and change application status"),
    "applications.manage": ("applications", "Edit application types and settings"),
    "rules.manage": ("content", "Create, edit and delete rules"),
    "content.manage": ("content", "Manage partners, team roster and streamers"),
    "chat.respond": ("chat", "Claim and answer live chats"),
    "users.manage": ("users", "Ban users and force logouts"),
    "subscription.manage": ("billing", "Manage supporter packages"),
    "server.manage": ("server", "Edit server settings and poll the FiveM server"),
    "analytics.view": ("analytics", "View financial and activity dashboards"),
}
"""``name`` → ``(category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_defaults(engine: Engine) -> None:
    """Insert default settings and permissions that don't yet exist."""
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, description) in DEFAULT_SETTINGS.items():
            if session.get(ServerSetting, key) is None:
                session.add(ServerSetting(
                    setting_key=key, setting_value=value, description=description,
                ))
                inserted += 1

        existing = set(session.scalars(select(Permission.name)).all())
        for name, (category, description) in DEFAULT_PERMISSIONS.items():
            if name not in existing:
                session.add(Permission(name=name, category=category, description=description))
                inserted += 1

        session.commit()
        if inserted:
            logger.info("Seeded %d default settings/permissions.", inserted)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
