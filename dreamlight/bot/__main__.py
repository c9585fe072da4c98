"""
dreamlight.bot.__main__ — Entry point for ``python -m dreamlight.bot``
======================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (identity + guild).
3. Create the SQLAlchemy engine, ensure tables exist and seed defaults.
4. Create the DreamlightBot and hand it config + engine.
5. Start the bot (blocking — runs the asyncio event loop).

Run with::

    python -m dreamlight.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from dreamlight.bot.core import DreamlightBot
from dreamlight.config import load_config
from dreamlight.database.engine import create_db_engine, init_db
from dreamlight.services.log_buffer import install_handler

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("dreamlight")


def main() -> None:
    """Bootstrap and run the Dreamlight bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_BOT_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)
    install_handler()

    # 4. Bot.
    bot = DreamlightBot(cfg=cfg, engine=engine)

    # 5. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Dreamlight bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
