"""
dreamlight.services.embeds — Discord embed builders for bot commands
=====================================================================

All embed construction lives here so cogs only supply data.
"""

from __future__ import annotations

from datetime import datetime

import discord

from dreamlight.constants import STATUS_COLORS, STATUS_EMOJI


def build_server_embed(community_name: str, stats: dict | None) -> discord.Embed:
    """Live player counts from the last ``server_stats`` row."""
    if not stats:
        return discord.Embed(
            title=f"\U0001f3ae {community_name}",
            description="No server data yet. Ask staff to configure the server IP.",
            color=discord.Color(STATUS_COLORS["unknown"]),
        )

    online = (stats.get("uptime_percentage") or 0) > 0
    status = "operational" if online else "outage"
    embed = discord.Embed(
        title=f"\U0001f3ae {community_name}",
        description=f"{STATUS_EMOJI[status]} **{'Online' if online else 'Offline'}**",
        color=discord.Color(STATUS_COLORS[status]),
    )
    embed.add_field(
        name="Players",
        value=f"{stats.get('players_online', 0)}/{stats.get('max_players', 0)}",
    )
    embed.add_field(name="Queue", value=str(stats.get("queue_count", 0)))
    if online:
        embed.add_field(name="Ping", value=f"{stats.get('ping', 0)} ms")
    if stats.get("last_updated"):
        embed.timestamp = datetime.fromisoformat(stats["last_updated"])
        embed.set_footer(text="Last updated")
    return embed


def build_cfx_embed(status: dict) -> discord.Embed:
    """CFX platform status with the most recent incident, if any."""
    overall = status.get("overall_status", "unknown")
    embed = discord.Embed(
        title="\U0001f310 CFX Platform Status",
        description=f"{STATUS_EMOJI.get(overall, STATUS_EMOJI['unknown'])} **{overall.title()}**",
        color=discord.Color(STATUS_COLORS.get(overall, STATUS_COLORS["unknown"])),
    )
    incident = status.get("last_incident")
    if incident:
        title = incident.get("title") or "Untitled incident"
        link = incident.get("link")
        embed.add_field(
            name="Latest incident",
            value=f"[{title}]({link})" if link else title,
            inline=False,
        )
    if status.get("error"):
        embed.add_field(name="Error", value=status["error"][:1024], inline=False)
    embed.set_footer(text="Source: status.cfx.re")
    return embed
