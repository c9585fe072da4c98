"""
dreamlight.api.rate_limit — Per-Staff Mutation Rate Limiting
=============================================================

Staff write endpoints are throttled to 30 mutations per rolling minute
per account.  State lives in ``staff_rate_limit_events`` so the limit
holds across API restarts and workers.

Exceeding the limit returns HTTP 429 with a ``Retry-After`` header.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session

from dreamlight.api.deps import require_staff
from dreamlight.database.engine import run_db
from dreamlight.database.models import StaffRateLimitEvent, as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 30
DEFAULT_WINDOW_SECONDS = 60

_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class StaffRateLimiter:
    """Sliding-window counter keyed by staff user id."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def hit(self, staff_id: str) -> tuple[bool, dict[str, Any]]:
        """Count one mutation for *staff_id* if the window has room.

        Returns ``(allowed, info)``; ``info`` carries ``limit``,
        ``remaining`` and ``reset`` (seconds until a slot frees up).
        Rejected requests are not recorded.
        """
        now = utcnow()
        window = timedelta(seconds=self.window_seconds)
        with Session(self.engine) as session:
            session.execute(
                delete(StaffRateLimitEvent).where(
                    StaffRateLimitEvent.staff_id == staff_id,
                    StaffRateLimitEvent.timestamp < now - window,
                )
            )
            recent = session.scalars(
                select(StaffRateLimitEvent.timestamp)
                .where(StaffRateLimitEvent.staff_id == staff_id)
                .order_by(StaffRateLimitEvent.timestamp)
            ).all()

            if len(recent) >= self.max_requests:
                session.commit()
                wait = (as_utc(recent[0]) + window - now).total_seconds()
                return False, {
                    "limit": self.max_requests,
                    "remaining": 0,
                    "reset": max(1, int(wait) + 1),
                }

            session.add(StaffRateLimitEvent(staff_id=staff_id, timestamp=now))
            session.commit()

        return True, {
            "limit": self.max_requests,
            "remaining": self.max_requests - len(recent) - 1,
            "reset": self.window_seconds,
        }

    def reset(self, staff_id: str | None = None) -> None:
        with Session(self.engine) as session:
            stmt = delete(StaffRateLimitEvent)
            if staff_id is not None:
                stmt = stmt.where(StaffRateLimitEvent.staff_id == staff_id)
            session.execute(stmt)
            session.commit()


_limiter: StaffRateLimiter | None = None


def get_rate_limiter() -> StaffRateLimiter:
    if _limiter is None:
        raise RuntimeError("Rate limiter not configured; call configure_rate_limiter() first")
    return _limiter


def configure_rate_limiter(*, engine: Engine, max_requests: int = DEFAULT_RATE_LIMIT) -> StaffRateLimiter:
    global _limiter
    _limiter = StaffRateLimiter(max_requests, DEFAULT_WINDOW_SECONDS, engine=engine)
    return _limiter


async def rate_limited_staff(
    request: Request,
    user: dict = Depends(require_staff),
) -> dict:
    """``require_staff`` plus the mutation throttle.

    Safe methods pass straight through.
    """
    if request.method not in _MUTATION_METHODS:
        return user

    limiter = get_rate_limiter()
    allowed, info = await run_db(limiter.hit, user["id"])
    if not allowed:
        logger.warning("Rate limit exceeded for staff %s", user.get("email"))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": f"Rate limit exceeded: {limiter.max_requests} mutations per minute.",
                "retry_after": info["reset"],
            },
            headers={"Retry-After": str(info["reset"])},
        )
    return user
