"""
dreamlight.bot.core — Bot Instance & Cog Loader
================================================

:class:`DreamlightBot` is a ``commands.Bot`` that carries the shared
config (``bot.cfg``) and DB engine (``bot.engine``) for its cogs, loads
every extension in :data:`EXTENSIONS`, and syncs the slash-command tree
once connected (guild-scoped when ``DEV_GUILD_ID`` is set, else global).

The bot is a worker for the panel: it runs the periodic jobs (heartbeat,
missed-chat sweep, FiveM polling, session cleanup) and answers a couple
of status commands.  All state lives in PostgreSQL.
"""

from __future__ import annotations

import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from dreamlight.config import PanelConfig
from dreamlight.services.email_service import ResendClient, get_mailer

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "dreamlight.bot.cogs.tasks",
    "dreamlight.bot.cogs.status",
]


class DreamlightBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`PanelConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    """

    def __init__(self, cfg: PanelConfig, engine: Engine) -> None:
        # Slash commands and background tasks only; no privileged intents
        intents = discord.Intents.default()
        intents.message_content = False
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.community_name} — {cfg.community_motto}",
        )

        self.cfg = cfg
        self.engine = engine
        self.mailer: ResendClient | None = get_mailer(cfg.email_from)

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load all cog extensions; a broken cog is logged and skipped."""
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except commands.ExtensionError as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

        if self.get_guild(self.cfg.guild_id) is None:
            logger.warning("Primary guild %d not found; role sync will fail", self.cfg.guild_id)

    async def close(self) -> None:
        logger.info("Bot shutting down…")
        await super().close()
