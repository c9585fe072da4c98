"""
dreamlight.constants — Shared Constants
========================================

Single source of truth for limits, role ranks and presentation colours.
Import from here instead of duplicating in services, cogs and routes.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Sessions & accounts
# ---------------------------------------------------------------------------
SESSION_TTL_DAYS = 7
VERIFICATION_TOKEN_TTL_HOURS = 24
RESET_TOKEN_TTL_HOURS = 24
OAUTH_STATE_TTL_SECONDS = 600

# ---------------------------------------------------------------------------
# Security thresholds
# ---------------------------------------------------------------------------
FAILED_LOGIN_WINDOW_HOURS = 24
FAILED_LOGIN_THRESHOLD = 5
FAILED_LOGIN_BLOCK_HOURS = 1
APPLICATION_RATE_LIMIT = 3  # per IP per window
APPLICATION_RATE_WINDOW_HOURS = 24

# ---------------------------------------------------------------------------
# Roles — legacy ``custom_users.role`` ranks, lowest first
# ---------------------------------------------------------------------------
ROLE_HIERARCHY: tuple[str, ...] = ("user", "moderator", "staff", "admin")
STAFF_ROLES: frozenset[str] = frozenset({"moderator", "staff", "admin"})

# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
DEFAULT_MISSED_CHAT_TIMEOUT_MINUTES = 5

# ---------------------------------------------------------------------------
# FiveM server polling
# ---------------------------------------------------------------------------
DEFAULT_MAX_PLAYERS = 300
ONLINE_UPTIME_PERCENT = 99.9

# ---------------------------------------------------------------------------
# Discord embed colours (webhook log + bot embeds)
# ---------------------------------------------------------------------------
COLOR_BLUE = 0x3498DB
COLOR_GREEN = 0x27AE60
COLOR_RED = 0xE74C3C
COLOR_ORANGE = 0xF39C12
COLOR_DARK_ORANGE = 0xE67E22
COLOR_PURPLE = 0x9B59B6

STATUS_COLORS: dict[str, int] = {
    "operational": COLOR_GREEN,
    "maintenance": COLOR_BLUE,
    "degraded": COLOR_ORANGE,
    "outage": COLOR_RED,
    "unknown": COLOR_PURPLE,
}

STATUS_EMOJI: dict[str, str] = {
    "operational": "\U0001f7e2",  # 🟢
    "maintenance": "\U0001f535",  # 🔵
    "degraded": "\U0001f7e1",     # 🟡
    "outage": "\U0001f534",       # 🔴
    "unknown": "\u26aa",         # ⚪
}
