"""
dreamlight.api.deps — FastAPI dependency injection
====================================================

Authentication is a bearer session token issued by ``POST /api/auth/login``
and looked up in ``user_sessions`` on every request.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import Engine

from dreamlight.config import PanelConfig, load_config
from dreamlight.constants import STAFF_ROLES
from dreamlight.database.engine import create_db_engine, run_db
from dreamlight.services import (
    auth_service,
    email_service,
    permission_service,
    settings_service,
)
from dreamlight.services.email_service import ResendClient


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> PanelConfig:
    return load_config()


def get_mailer(cfg: Annotated[PanelConfig, Depends(get_config)]) -> ResendClient | None:
    return email_service.get_mailer(cfg.email_from)


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    return authorization.split(" ", 1)[1].strip()


def request_ip(request: Request) -> str | None:
    """Client IPv4 from ``X-Forwarded-For``, else the socket peer."""
    forwarded = auth_service.client_ip(request.headers.get("x-forwarded-for"))
    if forwarded:
        return forwarded
    peer = request.client.host if request.client else None
    return auth_service.client_ip(peer)


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> dict:
    """Resolve the session token to a user dict.  Raises 401/403."""
    token = bearer_token(authorization)
    user = await run_db(auth_service.validate_session, engine, token)
    user["session_token"] = token
    return user


async def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> dict | None:
    if not authorization:
        return None
    return await get_current_user(authorization, engine)


def require_staff(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") not in STAFF_ROLES:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Staff access required")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin access required")
    return user


def require_permission(name: str) -> Callable[..., dict]:
    """Dependency factory: the user must hold permission *name* (admins always do)."""

    async def dependency(
        user: dict = Depends(get_current_user),
        engine: Engine = Depends(get_engine),
    ) -> dict:
        if not await run_db(permission_service.has_permission, engine, user, name):
            raise HTTPException(status.HTTP_403_FORBIDDEN, f"Missing permission: {name}")
        return user

    return dependency


async def site_available(
    user: dict | None = Depends(get_optional_user),
    engine: Engine = Depends(get_engine),
) -> None:
    """Router guard: the public site goes dark while the kill switch is on.

    Staff keep access so content can still be edited during maintenance.
    """
    if user is not None and user.get("role") in STAFF_ROLES:
        return
    if await run_db(settings_service.is_kill_switch_active, engine):
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            {"error": "Service temporarily unavailable", "kill_switch_active": True},
        )
