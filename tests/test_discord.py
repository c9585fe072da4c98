"""
tests/test_discord.py — Role Sync, Webhook Log & Bot Embeds
=============================================================
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import httpx
import pytest

from conftest import make_user
from dreamlight.constants import COLOR_GREEN, COLOR_RED, STATUS_COLORS
from dreamlight.errors import UpstreamError, ValidationError
from dreamlight.services import discord_service, embeds, security_service
from dreamlight.services.settings_service import merge_setting

GUILD = "900000000000000001"
NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)


class FakeDiscord:
    """Records REST calls and answers from canned member / role data."""

    def __init__(self, member_roles=(), roles=(), bot_roles=()):
        self.calls: list[tuple[str, str]] = []
        self.member_roles = list(member_roles)
        self.roles = list(roles)
        self.bot_roles = list(bot_roles)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v10")
        self.calls.append((request.method, path))
        if path == "/users/@me":
            return httpx.Response(200, json={"id": "bot-1", "username": "Dreamlight"})
        if path == f"/guilds/{GUILD}/members/bot-1":
            return httpx.Response(200, json={"roles": self.bot_roles})
        if path.startswith(f"/guilds/{GUILD}/members/") and "/roles/" in path:
            return httpx.Response(204)
        if path.startswith(f"/guilds/{GUILD}/members/"):
            return httpx.Response(200, json={"roles": self.member_roles})
        if path == f"/guilds/{GUILD}/roles":
            return httpx.Response(200, json=self.roles)
        if path == f"/guilds/{GUILD}":
            return httpx.Response(200, json={
                "name": "Dreamlight RP",
                "approximate_member_count": 1200,
                "approximate_presence_count": 340,
            })
        return httpx.Response(404, json={"message": "Unknown"})

    def client(self) -> discord_service.DiscordRestClient:
        return discord_service.DiscordRestClient("bot-token", transport=httpx.MockTransport(self))


# ===========================================================================
# Role diff
# ===========================================================================
class TestComputeRoleChanges:
    MAPPINGS = {"admin": "r-admin", "staff": "r-staff", "moderator": "r-mod"}

    def test_adds_missing_mapped_role(self):
        assert discord_service.compute_role_changes(["staff"], self.MAPPINGS, []) == (["r-staff"], [])

    def test_removes_stale_managed_roles_only(self):
        add, remove = discord_service.compute_role_changes(
            ["moderator"], self.MAPPINGS, ["r-staff", "r-mod", "hand-given"],
        )
        assert add == []
        assert remove == ["r-staff"]

    def test_unmapped_internal_roles_ignored(self):
        assert discord_service.compute_role_changes(["support"], self.MAPPINGS, ["hand-given"]) == ([], [])

    def test_shared_discord_role(self):
        mappings = {"staff": "r-team", "moderator": "r-team"}
        assert discord_service.compute_role_changes(["moderator"], mappings, ["r-team"]) == ([], [])


class TestSyncUserRoles:
    def _configure(self, engine, **overrides):
        merge_setting(engine, key="discord_settings", patch={
            "server_id": GUILD,
            "auto_roles": True,
            "role_mappings": {"staff": "r-staff", "moderator": "r-mod"},
            **overrides,
        })

    def test_applies_diff_and_audits(self, db_engine, admin_user):
        self._configure(db_engine)
        user = make_user(db_engine, "linked@example.com", role="staff", discord_id="555")
        fake = FakeDiscord(member_roles=["r-mod"])

        result = asyncio.run(discord_service.sync_user_roles(
            db_engine, fake.client(), user["id"], actor_id=admin_user["id"],
        ))
        assert result == {"assigned": ["r-staff"], "removed": ["r-mod"]}
        assert ("PUT", f"/guilds/{GUILD}/members/555/roles/r-staff") in fake.calls
        assert ("DELETE", f"/guilds/{GUILD}/members/555/roles/r-mod") in fake.calls

        logs = security_service.get_audit_logs(db_engine, resource_type="user")
        assert logs[0]["action"] == "discord_role_sync"

    def test_nothing_to_do(self, db_engine):
        self._configure(db_engine)
        user = make_user(db_engine, "linked@example.com", role="staff", discord_id="555")
        fake = FakeDiscord(member_roles=["r-staff"])
        result = asyncio.run(discord_service.sync_user_roles(db_engine, fake.client(), user["id"]))
        assert result == {"assigned": [], "removed": []}
        assert all(method == "GET" for method, _ in fake.calls)

    @pytest.mark.parametrize(
        "overrides",
        [{"auto_roles": False}, {"server_id": ""}, {"role_mappings": {}}],
    )
    def test_requires_configuration(self, db_engine, overrides):
        self._configure(db_engine, **overrides)
        user = make_user(db_engine, "linked@example.com", role="staff", discord_id="555")
        with pytest.raises(ValidationError):
            asyncio.run(discord_service.sync_user_roles(db_engine, FakeDiscord().client(), user["id"]))

    def test_requires_linked_account(self, db_engine, staff_user):
        self._configure(db_engine)
        with pytest.raises(ValidationError):
            asyncio.run(discord_service.sync_user_roles(db_engine, FakeDiscord().client(), staff_user["id"]))

    def test_upstream_failure(self, db_engine):
        self._configure(db_engine)
        user = make_user(db_engine, "linked@example.com", role="staff", discord_id="555")
        client = discord_service.DiscordRestClient(
            "bot-token", transport=httpx.MockTransport(lambda r: httpx.Response(403, text="Missing Access")),
        )
        with pytest.raises(UpstreamError) as exc:
            asyncio.run(discord_service.sync_user_roles(db_engine, client, user["id"]))
        assert exc.value.extra["upstream_status"] == 403


class TestBotPermissions:
    def test_manage_roles_via_role(self):
        fake = FakeDiscord(
            roles=[
                {"id": GUILD, "permissions": "0"},
                {"id": "r-bot", "permissions": str(discord_service.MANAGE_ROLES)},
            ],
            bot_roles=["r-bot"],
        )
        result = asyncio.run(discord_service.verify_bot_permissions(fake.client(), GUILD))
        assert result == {"bot_user_id": "bot-1", "has_manage_roles": True, "is_administrator": False}

    def test_everyone_role_counts(self):
        fake = FakeDiscord(roles=[{"id": GUILD, "permissions": str(discord_service.ADMINISTRATOR)}])
        result = asyncio.run(discord_service.verify_bot_permissions(fake.client(), GUILD))
        assert result["is_administrator"] is True
        assert result["has_manage_roles"] is True

    def test_no_permissions(self):
        fake = FakeDiscord(roles=[{"id": GUILD, "permissions": "0"}])
        assert not asyncio.run(discord_service.verify_bot_permissions(fake.client(), GUILD))["has_manage_roles"]

    def test_guild_stats(self):
        stats = asyncio.run(discord_service.guild_stats(FakeDiscord().client(), GUILD))
        assert stats == {"name": "Dreamlight RP", "member_count": 1200, "online_count": 340}


def test_rest_client_needs_token(monkeypatch):
    with pytest.raises(UpstreamError):
        discord_service.get_rest_client()
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "abc")
    assert isinstance(discord_service.get_rest_client(), discord_service.DiscordRestClient)


# ===========================================================================
# Webhook log payloads
# ===========================================================================
class TestLogPayloads:
    def test_application_submitted(self):
        payload = discord_service.build_log_payload("application_submitted", {
            "steam_name": "PlayerOne", "discord_name": "<@123>", "application_type": "Whitelist",
        }, NOW)
        embed = payload["embeds"][0]
        assert payload["content"].endswith("from **PlayerOne** (<@123>)")
        assert embed["timestamp"] == NOW.isoformat()
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields["FiveM Name"] == "N/A"
        assert fields["Type"] == "Whitelist"
        assert fields["Status"] == "Pending Review"

    def test_denied_default_reason(self):
        payload = discord_service.build_log_payload("application_denied", {"discord_name": "sam"}, NOW)
        embed = payload["embeds"][0]
        assert embed["color"] == COLOR_RED
        assert embed["fields"][-1] == {"name": "Reason", "value": "No reason provided", "inline": False}
        assert "**sam**" in payload["content"]

    def test_rule_change_verbs(self):
        payload = discord_service.build_log_payload("rule_change", {
            "action": "rule_created", "admin": "Admin",
            "rule": {"title": "No RDM", "description": "x" * 250},
        }, NOW)
        embed = payload["embeds"][0]
        assert embed["title"].endswith("Rule CREATED")
        assert embed["color"] == COLOR_GREEN
        description = next(f for f in embed["fields"] if f["name"] == "Description")["value"]
        assert description == "x" * 200 + "..."
        assert payload["content"] == '\U0001f4cb **Rule created** by **Admin**: "No RDM"'

    def test_purchase_amount(self):
        payload = discord_service.build_log_payload("purchase_completed", {
            "customer_email": "buyer@example.com", "price": "9.99", "currency": "eur",
        }, NOW)
        fields = {f["name"]: f["value"] for f in payload["embeds"][0]["fields"]}
        assert fields["Amount"] == "9.99 EUR"
        assert fields["Customer"] == "buyer@example.com"

    @pytest.mark.parametrize(
        "log_type",
        [
            "application_approved", "application_under_review", "system_log",
            "admin_user_action", "admin_system_change", "admin_rule_change",
            "admin_application_action",
        ],
    )
    def test_every_type_builds(self, log_type):
        payload = discord_service.build_log_payload(log_type, {"action": "approved"}, NOW)
        assert payload["embeds"][0]["footer"]["text"]

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            discord_service.build_log_payload("party", {}, NOW)


class TestSendLog:
    def test_skipped_without_webhook(self, db_engine):
        result = asyncio.run(discord_service.send_log(db_engine, "system_log", {"event": "boot"}))
        assert result["skipped"] is True

    def test_posts_to_settings_webhook(self, db_engine):
        merge_setting(db_engine, key="discord_settings", patch={"webhook_url": "https://discord.test/hook"})
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append({"url": str(request.url), "body": json.loads(request.content)})
            return httpx.Response(204)

        result = asyncio.run(discord_service.send_log(
            db_engine, "system_log", {"event": "boot"}, transport=httpx.MockTransport(handler),
        ))
        assert result == {"success": True}
        assert seen[0]["url"] == "https://discord.test/hook"
        assert seen[0]["body"]["content"] == "\U0001f527 **System Event**: boot"

    def test_env_webhook_wins_and_errors_raise(self, db_engine, monkeypatch):
        monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.test/env")
        transport = httpx.MockTransport(lambda r: httpx.Response(400, text="bad embed"))
        with pytest.raises(UpstreamError):
            asyncio.run(discord_service.send_log(db_engine, "system_log", {}, transport=transport))

    def test_unknown_type_rejected_before_posting(self, db_engine, monkeypatch):
        monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.test/env")
        with pytest.raises(ValidationError):
            asyncio.run(discord_service.send_log(db_engine, "party", {}))


# ===========================================================================
# Bot embeds
# ===========================================================================
class TestEmbeds:
    def test_server_embed_without_data(self):
        embed = embeds.build_server_embed("Dreamlight RP", None)
        assert "configure the server IP" in embed.description
        assert embed.color.value == STATUS_COLORS["unknown"]

    def test_online_server(self):
        embed = embeds.build_server_embed("Dreamlight RP", {
            "players_online": 120, "max_players": 300, "queue_count": 4,
            "uptime_percentage": 99.9, "ping": 42, "last_updated": NOW.isoformat(),
        })
        values = {f.name: f.value for f in embed.fields}
        assert values == {"Players": "120/300", "Queue": "4", "Ping": "42 ms"}
        assert embed.timestamp == NOW

    def test_offline_server_hides_ping(self):
        embed = embeds.build_server_embed("Dreamlight RP", {"players_online": 0, "uptime_percentage": 0})
        assert "Offline" in embed.description
        assert "Ping" not in {f.name for f in embed.fields}

    def test_cfx_embed(self):
        embed = embeds.build_cfx_embed({
            "overall_status": "outage",
            "last_incident": {"title": "API down", "link": "https://status.cfx.re/x"},
        })
        assert "Outage" in embed.description
        assert embed.fields[0].value == "[API down](https://status.cfx.re/x)"
        assert embed.color.value == STATUS_COLORS["outage"]
