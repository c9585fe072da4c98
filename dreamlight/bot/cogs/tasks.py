"""
dreamlight.bot.cogs.tasks — Periodic Background Tasks
======================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Heartbeat** — every 30 s, so ``/api/health/bot`` can tell the bot is up.
- **Missed-chat sweep** — every minute, records chats left waiting past
  the configured timeout and emails staff.
- **Server poll** — every 5 min, refreshes the FiveM player counts.
- **Session cleanup** — hourly, deletes expired login sessions.

Sync work goes through ``run_db()`` so the event loop is never blocked.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from dreamlight.database.engine import run_db
from dreamlight.errors import PanelError
from dreamlight.services import chat_service, fivem_service, security_service
from dreamlight.services.settings_service import save_bot_heartbeat

if TYPE_CHECKING:
    from dreamlight.bot.core import DreamlightBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: DreamlightBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.heartbeat_loop.start()
        self.missed_chat_loop.start()
        self.server_stats_loop.start()
        self.session_cleanup_loop.start()

    async def cog_unload(self) -> None:
        self.heartbeat_loop.cancel()
        self.missed_chat_loop.cancel()
        self.server_stats_loop.cancel()
        self.session_cleanup_loop.cancel()

    # -------------------------------------------------------------------
    # Bot heartbeat — writes a timestamp every 30 seconds
    # -------------------------------------------------------------------
    @tasks.loop(seconds=30)
    async def heartbeat_loop(self):
        try:
            await run_db(save_bot_heartbeat, self.bot.engine)
        except Exception:
            logger.exception("Heartbeat write failed", extra={"task": "heartbeat"})

    @heartbeat_loop.before_loop
    async def _wait_heartbeat(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Missed chats — every minute
    # -------------------------------------------------------------------
    @tasks.loop(minutes=1)
    async def missed_chat_loop(self):
        """Turn overdue waiting chats into missed-chat records and alert staff."""
        try:
            result = await chat_service.detect_missed_chats(self.bot.engine, self.bot.mailer)
            if result["processed_count"]:
                logger.info(
                    "Missed-chat sweep: %d chats, %d emails (timeout %d min)",
                    result["processed_count"], result["emails_sent"], result["timeout_minutes"],
                )
        except Exception:
            logger.exception("Missed-chat sweep failed", extra={"task": "missed_chats"})

    @missed_chat_loop.before_loop
    async def _wait_missed_chats(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # FiveM server stats — every 5 minutes
    # -------------------------------------------------------------------
    @tasks.loop(minutes=5)
    async def server_stats_loop(self):
        try:
            await fivem_service.refresh_server_stats(self.bot.engine)
        except PanelError as exc:
            # Usually "Server IP not configured"; nothing to poll yet
            logger.info("Server poll skipped: %s", exc.message)
        except Exception:
            logger.exception("Server poll failed", extra={"task": "server_stats"})

    @server_stats_loop.before_loop
    async def _wait_server_stats(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Expired session cleanup — hourly
    # -------------------------------------------------------------------
    @tasks.loop(hours=1)
    async def session_cleanup_loop(self):
        try:
            deleted = await run_db(security_service.cleanup_expired_sessions, self.bot.engine)
            if deleted:
                logger.info("Session cleanup: %d expired sessions removed", deleted)
        except Exception:
            logger.exception("Session cleanup failed", extra={"task": "session_cleanup"})

    @session_cleanup_loop.before_loop
    async def _wait_session_cleanup(self):
        await self.bot.wait_until_ready()


async def setup(bot: DreamlightBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
