"""
dreamlight.bot.cogs.status — Server & Platform Status Commands
===============================================================

- /server — live player count from the last poll
- /cfx — CFX platform status
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from discord.ext import commands

from dreamlight.database.engine import run_db
from dreamlight.services import cfx_status, fivem_service
from dreamlight.services.embeds import build_cfx_embed, build_server_embed

if TYPE_CHECKING:
    from dreamlight.bot.core import DreamlightBot


class Status(commands.Cog, name="Status"):
    """Read-only status lookups for the community."""

    def __init__(self, bot: DreamlightBot) -> None:
        self.bot = bot

    @commands.hybrid_command(  # type: ignore[arg-type]
        name="server",
        description="Show how many players are on the FiveM server.",
    )
    async def server(self, ctx: commands.Context) -> None:
        stats = await run_db(fivem_service.current_stats, self.bot.engine)
        await ctx.send(embed=build_server_embed(self.bot.cfg.community_name, stats))

    @commands.hybrid_command(  # type: ignore[arg-type]
        name="cfx",
        description="Show the CFX.re platform status.",
    )
    async def cfx(self, ctx: commands.Context) -> None:
        await ctx.defer()
        status = await cfx_status.get_status()
        await ctx.send(embed=build_cfx_embed(status))


async def setup(bot: DreamlightBot) -> None:
    await bot.add_cog(Status(bot))
