"""
dreamlight.services.discord_service — Discord REST, Role Sync & Webhook Log
=============================================================================

Three jobs:

* :class:`DiscordRestClient` — the handful of v10 REST calls the panel
  makes with the bot token (member lookup, role add/remove, guild info).
* Role sync — mirror a user's internal roles onto their Discord member
  using ``discord_settings.role_mappings`` (internal role → Discord role id).
  Only roles that appear in the mapping are ever touched.
* Webhook log — post an embed to the staff log channel for application,
  rule, admin and purchase events.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy.orm import Session

from dreamlight.constants import (
    COLOR_BLUE,
    COLOR_DARK_ORANGE,
    COLOR_GREEN,
    COLOR_ORANGE,
    COLOR_PURPLE,
    COLOR_RED,
)
from dreamlight.database.engine import run_db
from dreamlight.database.models import User
from dreamlight.errors import PanelError, UpstreamError, ValidationError
from dreamlight.services import permission_service, security_service
from dreamlight.services.settings_service import get_setting_dict, read_setting

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"

MANAGE_ROLES = 0x10000000
ADMINISTRATOR = 0x8


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------
class DiscordRestClient:
    """Bot-token authenticated wrapper over the Discord REST API."""

    def __init__(self, bot_token: str, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._headers = {"Authorization": f"Bot {bot_token}"}
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=DISCORD_API, timeout=10, headers=self._headers, transport=self._transport,
        ) as client:
            resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 300:
            raise UpstreamError(
                f"Discord API error: {resp.status_code} - {resp.text}",
                upstream_status=resp.status_code,
            )
        return resp

    async def get_current_user(self) -> dict:
        return (await self._request("GET", "/users/@me")).json()

    async def get_guild(self, guild_id: str | int) -> dict:
        resp = await self._request("GET", f"/guilds/{guild_id}", params={"with_counts": "true"})
        return resp.json()

    async def get_guild_roles(self, guild_id: str | int) -> list[dict]:
        return (await self._request("GET", f"/guilds/{guild_id}/roles")).json()

    async def get_guild_member(self, guild_id: str | int, user_id: str | int) -> dict:
        return (await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")).json()

    async def assign_role(self, guild_id: str | int, user_id: str | int, role_id: str) -> None:
        await self._request("PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}")

    async def remove_role(self, guild_id: str | int, user_id: str | int, role_id: str) -> None:
        await self._request("DELETE", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}")


def get_rest_client() -> DiscordRestClient:
    token = os.getenv("DISCORD_BOT_TOKEN", "").strip()
    if not token:
        raise UpstreamError("DISCORD_BOT_TOKEN is not configured")
    return DiscordRestClient(token)


# ---------------------------------------------------------------------------
# Role sync
# ---------------------------------------------------------------------------
def compute_role_changes(
    internal_roles: list[str],
    role_mappings: dict[str, str],
    member_roles: list[str],
) -> tuple[list[str], list[str]]:
    """Return ``(to_add, to_remove)`` Discord role ids.

    Targets are the mapped roles of *internal_roles*.  Only mapping values
    count as managed, so roles handed out by hand in Discord are left alone.
    """
    held = {str(r) for r in member_roles}
    targets: list[str] = []
    for role in internal_roles:
        mapped = role_mappings.get(role)
        if mapped and str(mapped) not in targets:
            targets.append(str(mapped))
    managed: list[str] = []
    for mapped in role_mappings.values():
        if mapped and str(mapped) not in managed:
            managed.append(str(mapped))

    to_add = [r for r in targets if r not in held]
    to_remove = [r for r in managed if r in held and r not in targets]
    return to_add, to_remove


def _load_sync_context(engine, user_id: str) -> tuple[dict, str | None, list[str]]:
    with Session(engine) as session:
        settings = get_setting_dict(session, "discord_settings")
        user = session.get(User, user_id)
        discord_id = user.discord_id if user else None
    roles = permission_service.get_user_roles(engine, user_id)
    return settings, discord_id, roles


async def sync_user_roles(
    engine,
    client: DiscordRestClient,
    user_id: str,
    *,
    actor_id: str | None = None,
) -> dict[str, list[str]]:
    """Make the user's Discord roles match their internal roles."""
    settings, discord_id, internal_roles = await run_db(_load_sync_context, engine, user_id)

    guild_id = settings.get("server_id")
    if not guild_id or not settings.get("auto_roles"):
        raise ValidationError("Discord auto-roles not configured")
    if not discord_id:
        raise ValidationError("User has not connected Discord")
    mappings = settings.get("role_mappings") or {}
    if not mappings:
        raise ValidationError("Discord role mappings not configured")

    member = await client.get_guild_member(guild_id, discord_id)
    to_add, to_remove = compute_role_changes(internal_roles, mappings, member.get("roles", []))

    for role_id in to_add:
        await client.assign_role(guild_id, discord_id, role_id)
    for role_id in to_remove:
        await client.remove_role(guild_id, discord_id, role_id)

    if to_add or to_remove:
        await run_db(
            security_service.log_audit_event,
            engine,
            actor_id=actor_id,
            action="discord_role_sync",
            resource_type="user",
            resource_id=user_id,
            new_values={"assigned": to_add, "removed": to_remove},
        )
    logger.info("Role sync for %s: +%d -%d", user_id, len(to_add), len(to_remove))
    return {"assigned": to_add, "removed": to_remove}


async def verify_bot_permissions(client: DiscordRestClient, guild_id: str | int) -> dict:
    """Can the bot manage roles in *guild_id*?"""
    me = await client.get_current_user()
    member = await client.get_guild_member(guild_id, me["id"])
    roles = await client.get_guild_roles(guild_id)

    held = set(member.get("roles", [])) | {str(guild_id)}  # @everyone has the guild's id
    perms = 0
    for role in roles:
        if str(role["id"]) in held:
            perms |= int(role.get("permissions", 0))
    is_admin = bool(perms & ADMINISTRATOR)
    return {
        "bot_user_id": me["id"],
        "has_manage_roles": is_admin or bool(perms & MANAGE_ROLES),
        "is_administrator": is_admin,
    }


async def guild_stats(client: DiscordRestClient, guild_id: str | int) -> dict:
    guild = await client.get_guild(guild_id)
    return {
        "name": guild.get("name"),
        "member_count": guild.get("approximate_member_count", 0),
        "online_count": guild.get("approximate_presence_count", 0),
    }


# ---------------------------------------------------------------------------
# Webhook log
# ---------------------------------------------------------------------------
APPLICATION_FOOTER = "FiveM Server Application System"
ADMIN_FOOTER = "FiveM Server Admin Panel"


def _field(name: str, value: Any, inline: bool = True, default: str = "N/A") -> dict:
    text = default if value in (None, "") else str(value)
    return {"name": name, "value": text, "inline": inline}


def _mention(discord_name: str | None) -> str:
    if not discord_name:
        return ""
    cleaned = "".join(ch for ch in discord_name if ch not in "@<>")
    return f" (<@{cleaned}>)"


def _truncate(text: str | None, limit: int) -> str | None:
    if text and len(text) > limit:
        return text[:limit] + "..."
    return text


def _applicant_fields(data: dict) -> list[dict]:
    return [
        _field("Steam Name", data.get("steam_name")),
        _field("Discord Tag", data.get("discord_tag") or data.get("discord_name")),
        _field("FiveM Name", data.get("fivem_name")),
    ]


def build_log_payload(log_type: str, data: dict, now: datetime | None = None) -> dict:
    """Return ``{"content", "embeds": [embed]}`` for a webhook post.

    Raises :class:`ValidationError` for an unknown *log_type*.
    """
    stamp = (now or datetime.now(UTC)).isoformat()
    applicant = data.get("steam_name") or data.get("discord_name") or "Unknown"
    mention = _mention(data.get("discord_name"))

    if log_type == "application_submitted":
        embed = {
            "title": "\U0001f195 New Application Submitted",
            "color": COLOR_BLUE,
            "fields": _applicant_fields(data) + [
                _field("Type", data.get("application_type")),
                _field("Status", "Pending Review"),
            ],
            "footer": {"text": APPLICATION_FOOTER},
        }
        content = f"\U0001f4cb **New application received** from **{applicant}**{mention}"
    elif log_type == "application_approved":
        embed = {
            "title": "✅ Application Approved",
            "color": COLOR_GREEN,
            "fields": _applicant_fields(data) + [
                _field("Review Notes", data.get("review_notes"), False, "No notes provided"),
            ],
            "footer": {"text": APPLICATION_FOOTER},
        }
        content = f"\U0001f389 **Application approved** for **{applicant}**{mention}! Welcome to the server!"
    elif log_type == "application_denied":
        embed = {
            "title": "❌ Application Denied",
            "color": COLOR_RED,
            "fields": _applicant_fields(data) + [
                _field("Reason", data.get("review_notes"), False, "No reason provided"),
            ],
            "footer": {"text": APPLICATION_FOOTER},
        }
        content = f"\U0001f6ab **Application denied** for **{applicant}**{mention}"
    elif log_type == "application_under_review":
        embed = {
            "title": "\U0001f50d Application Under Review",
            "color": COLOR_ORANGE,
            "fields": _applicant_fields(data) + [
                _field("Notes", data.get("review_notes"), False, "No notes"),
            ],
            "footer": {"text": APPLICATION_FOOTER},
        }
        content = f"\U0001f440 **Application under review** for **{applicant}**{mention}"
    elif log_type == "system_log":
        embed = {
            "title": "\U0001f527 System Log",
            "color": COLOR_PURPLE,
            "fields": [
                _field("Event", data.get("event"), default="Unknown"),
                _field("Source", data.get("source"), default="System"),
                _field("Severity", data.get("severity"), default="INFO"),
                _field("Message", data.get("message"), False, "No message"),
            ],
            "footer": {"text": "FiveM Server System"},
        }
        content = f"\U0001f527 **System Event**: {data.get('event', 'Unknown')}"
    elif log_type == "admin_user_action":
        embed = {
            "title": "\U0001f465 Admin User Action",
            "color": COLOR_DARK_ORANGE,
            "fields": [
                _field("Action", data.get("action"), default="Unknown"),
                _field("Admin", data.get("admin_user"), default="Unknown"),
                _field("Target", data.get("user_email") or data.get("staff_id"), default="Unknown"),
                _field(
                    "Details",
                    f"Role: {data['role']}" if data.get("role") else None,
                    False,
                    "No additional details",
                ),
            ],
            "footer": {"text": ADMIN_FOOTER},
        }
        content = f"\U0001f465 **{data.get('action')}** by **{data.get('admin_user')}**"
    elif log_type == "admin_system_change":
        value = data.get("setting_value")
        embed = {
            "title": "⚙️ System Setting Changed",
            "color": COLOR_PURPLE,
            "fields": [
                _field("Setting", data.get("setting_key"), default="Unknown"),
                _field("Admin", data.get("admin_user"), default="Unknown"),
                _field("Action", data.get("action"), default="Updated"),
                _field(
                    "Value",
                    f"`{_truncate(str(value), 100)}`" if value else None,
                    False,
                    "Not provided",
                ),
            ],
            "footer": {"text": ADMIN_FOOTER},
        }
        content = (
            f"⚙️ **Setting \"{data.get('setting_key')}\" updated** "
            f"by **{data.get('admin_user')}**"
        )
    elif log_type == "admin_rule_change":
        rule = data.get("rule") or {}
        embed = {
            "title": "\U0001f4cb Rule Management",
            "color": COLOR_BLUE,
            "fields": [
                _field("Action", data.get("action"), default="Unknown"),
                _field("Admin", data.get("admin_user"), default="Unknown"),
                _field("Rule", rule.get("title") or data.get("rule_id"), default="Unknown"),
                _field("Category", rule.get("category"), default="Not specified"),
            ],
            "footer": {"text": ADMIN_FOOTER},
        }
        content = f"\U0001f4cb **{data.get('action')}** by **{data.get('admin_user')}**"
    elif log_type == "admin_application_action":
        action = data.get("action")
        color = {"approved": COLOR_GREEN, "denied": COLOR_RED}.get(action, COLOR_ORANGE)
        embed = {
            "title": "\U0001f4dd Application Management",
            "color": color,
            "fields": [
                _field("Action", action, default="Unknown"),
                _field("Admin", data.get("admin_user"), default="Unknown"),
                _field("Applicant", data.get("steam_name"), default="Unknown"),
                _field("Notes", data.get("review_notes"), False, "No notes"),
            ],
            "footer": {"text": ADMIN_FOOTER},
        }
        content = (
            f"\U0001f4dd **Application {action}** by **{data.get('admin_user')}** "
            f"for **{data.get('steam_name')}**"
        )
    elif log_type == "rule_change":
        action = data.get("action") or ""
        verb = action.replace("rule_", "").replace("_", " ")
        emoji, color = {
            "rule_created": ("➕", COLOR_GREEN),
            "rule_updated": ("✏️", COLOR_ORANGE),
        }.get(action, ("\U0001f5d1️", COLOR_RED))
        rule = data.get("rule") or {}
        embed = {
            "title": f"{emoji} Rule {verb.upper()}",
            "color": color,
            "fields": [
                _field("Action", verb, default="Unknown"),
                _field("Admin", data.get("admin"), default="Unknown"),
                _field("Rule Title", rule.get("title"), False, "Unknown"),
                _field("Category", rule.get("category"), default="No category"),
                _field("Description", _truncate(rule.get("description"), 200), False, "No description"),
            ],
            "footer": {"text": ADMIN_FOOTER},
        }
        content = (
            f"\U0001f4cb **Rule {verb}** by **{data.get('admin', 'Unknown')}**: "
            f"\"{rule.get('title') or 'Unknown Rule'}\""
        )
    elif log_type == "purchase_completed":
        amount = data.get("price")
        embed = {
            "title": "\U0001f4b8 Purchase Completed",
            "color": COLOR_GREEN,
            "fields": [
                _field("Customer", data.get("customer_name") or data.get("customer_email")),
                _field("Package", data.get("package_name")),
                _field("Amount", f"{amount} {str(data.get('currency', 'USD')).upper()}" if amount else None),
                _field("Discord", data.get("discord_username")),
            ],
            "footer": {"text": "FiveM Server Store"},
        }
        content = f"\U0001f4b8 **New purchase** by **{data.get('customer_email', 'Unknown')}**"
    else:
        raise ValidationError("Unknown log type")

    embed["timestamp"] = stamp
    return {"content": content, "embeds": [embed]}


def _webhook_url(engine) -> str | None:
    url = os.getenv("DISCORD_WEBHOOK_URL", "").strip()
    if url:
        return url
    settings = read_setting(engine, "discord_settings", {}) or {}
    return (settings.get("webhook_url") or "").strip() or None


async def send_log(
    engine,
    log_type: str,
    data: dict,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Post a log embed to the configured webhook.

    Returns ``{"success": True, "skipped": True}`` when no webhook is set.
    """
    url = await run_db(_webhook_url, engine)
    if not url:
        logger.info("No Discord webhook configured, skipping %s", log_type)
        return {"success": True, "skipped": True, "reason": "No webhook configured"}

    payload = build_log_payload(log_type, data)
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        resp = await client.post(url, json=payload)
    if resp.status_code >= 300:
        raise UpstreamError(f"Discord webhook failed: {resp.status_code} - {resp.text}")
    return {"success": True}


async def send_log_quietly(engine, log_type: str, data: dict) -> None:
    """Fire-and-log variant for side effects that must not fail the caller."""
    try:
        await send_log(engine, log_type, data)
    except (PanelError, httpx.HTTPError) as exc:
        logger.warning("Discord log %s failed: %s", log_type, exc)
