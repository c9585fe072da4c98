"""
dreamlight.database.engine — Database Connection & Async Helper
================================================================

The API routes and the Discord bot both talk to PostgreSQL through the
same synchronous SQLAlchemy engine.  Async callers (bot cogs, async
routes that also hit Discord/Stripe) hop onto a worker thread with
:func:`run_db` so the event loop is never blocked:

    1. A bot task or async route needs data.
    2. It calls ``await run_db(some_function, engine, arg1)``.
    3. ``run_db`` ships the synchronous function to the default thread
       pool via ``asyncio.to_thread()``.
    4. The result is awaited back on the loop.

Usage::

    from dreamlight.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    result = await run_db(detect_missed_chats, engine)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine

from dreamlight.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine() -> Engine:
    """Build a SQLAlchemy :class:`Engine` from the ``DATABASE_URL`` env var.

    Pool sizing: five persistent connections, up to ten overflow, 10 s
    checkout timeout, connections recycled hourly.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed default ``server_settings`` rows.

    Safe on every startup.  Production schema is owned by Alembic
    (``alembic upgrade head``); ``create_all`` covers dev and tests.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from dreamlight.database.seed import seed_defaults

    seed_defaults(engine)


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Parameters
    ----------
    func:
        Any sync callable (typically a service function taking the engine).
    *args, **kwargs:
        Forwarded to *func*.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
