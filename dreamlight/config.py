"""
dreamlight.config — YAML Configuration Loader
==============================================

**Why this file exists:**
This module reads ``config.yaml`` for **infrastructure-only** settings
(community identity, Discord guild, dashboard port, kill-switch owner).
Everything staff can tune at runtime (missed-chat timeout, Discord role
mappings, application cooldowns, server IP) lives in the
``server_settings`` table instead, editable from the dashboard.

Secrets (database URL, bot token, Stripe/Resend/Twitch keys) are never
stored here — they come from the environment via ``.env``.

Usage::

    from dreamlight.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.community_name)    # "Dreamlight RP"
    print(cfg.guild_id)          # 1122334455667788990
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

DEFAULT_EMAIL_FROM = "Dreamlight <noreply@dreamlight.gg>"


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure/identity only.
# Runtime tuning lives in the DB ``server_settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PanelConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str
    community_motto: str

    # Discord
    bot_prefix: str
    guild_id: int  # Primary guild snowflake (role sync + bot status)

    # Dashboard
    dashboard_port: int

    # Optional
    kill_switch_owner_email: str | None = None  # Only this account may flip the kill switch
    log_channel_id: int | None = None  # Bot posts status summaries here
    email_from: str = DEFAULT_EMAIL_FROM


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> PanelConfig:
    """Read *path* and return a :class:`PanelConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    owner = (raw.get("kill_switch_owner_email") or "").strip().lower()
    return PanelConfig(
        community_name=raw["community_name"],
        community_motto=raw["community_motto"],
        bot_prefix=raw["bot_prefix"],
        guild_id=int(raw["guild_id"]),
        dashboard_port=int(raw["dashboard_port"]),
        kill_switch_owner_email=owner or None,
        log_channel_id=(
            int(raw["log_channel_id"]) if raw.get("log_channel_id") else None
        ),
        email_from=raw.get("email_from") or DEFAULT_EMAIL_FROM,
    )
