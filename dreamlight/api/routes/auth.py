"""
dreamlight.api.routes.auth — Accounts, sessions & Discord linking
==================================================================
"""

from __future__ import annotations

import logging
import os
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from dreamlight.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_mailer,
    request_ip,
)
from dreamlight.config import PanelConfig
from dreamlight.database.engine import run_db
from dreamlight.services import auth_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

DISCORD_API = "https://discord.com/api/v10"
DISCORD_AUTHORIZE_URL = "https://discord.com/oauth2/authorize"


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SignupBody(BaseModel):
    email: str
    password: str
    username: str | None = None


class LoginBody(BaseModel):
    email: str
    password: str


class VerifyEmailBody(BaseModel):
    token: str


class ResetRequestBody(BaseModel):
    email: str


class ResetConfirmBody(BaseModel):
    token: str
    new_password: str


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "").strip().rstrip("/")


def _oauth_env() -> tuple[str, str, str]:
    """Return the Discord OAuth client id, secret and redirect URI or raise a clear 500."""
    client_id = os.getenv("DISCORD_CLIENT_ID", "").strip()
    client_secret = os.getenv("DISCORD_CLIENT_SECRET", "").strip()
    redirect_uri = os.getenv("DISCORD_REDIRECT_URI", "").strip()

    missing = [
        name
        for name, value in (
            ("DISCORD_CLIENT_ID", client_id),
            ("DISCORD_CLIENT_SECRET", client_secret),
            ("DISCORD_REDIRECT_URI", redirect_uri),
        )
        if not value
    ]
    if missing:
        raise HTTPException(
            status_code=500,
            detail="Discord OAuth is not configured: missing " + ", ".join(missing),
        )
    return client_id, client_secret, redirect_uri


async def fetch_discord_identity(
    code: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Exchange an OAuth *code* and return the ``/users/@me`` payload."""
    client_id, client_secret, redirect_uri = _oauth_env()
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        token_resp = await client.post(
            f"{DISCORD_API}/oauth2/token",
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if token_resp.status_code != 200:
            logger.error("Discord token exchange failed: %s", token_resp.text)
            raise HTTPException(400, "Failed to exchange code with Discord")

        access_token = token_resp.json()["access_token"]
        user_resp = await client.get(
            f"{DISCORD_API}/users/@me",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    if user_resp.status_code != 200:
        raise HTTPException(400, "Failed to fetch Discord user")
    return user_resp.json()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
@router.post("/signup", status_code=201)
async def signup(
    body: SignupBody,
    engine=Depends(get_engine),
    cfg: PanelConfig = Depends(get_config),
    mailer=Depends(get_mailer),
):
    return await auth_service.signup(
        engine,
        mailer,
        email=body.email,
        password=body.password,
        username=body.username,
        verify_base_url=_frontend_url(),
        community_name=cfg.community_name,
    )


@router.post("/verify-email")
async def verify_email(body: VerifyEmailBody, engine=Depends(get_engine)):
    user = await run_db(auth_service.verify_email, engine, body.token)
    return {"success": True, "user": user}


@router.post("/password-reset/request")
async def request_password_reset(
    body: ResetRequestBody,
    engine=Depends(get_engine),
    cfg: PanelConfig = Depends(get_config),
    mailer=Depends(get_mailer),
):
    return await auth_service.request_password_reset(
        engine,
        mailer,
        body.email,
        reset_base_url=_frontend_url(),
        community_name=cfg.community_name,
    )


@router.post("/password-reset/confirm")
async def confirm_password_reset(body: ResetConfirmBody, engine=Depends(get_engine)):
    return await run_db(auth_service.reset_password, engine, body.token, body.new_password)


@router.post("/login")
async def login(body: LoginBody, request: Request, engine=Depends(get_engine)):
    return await run_db(
        auth_service.login,
        engine,
        body.email,
        body.password,
        ip_address=request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.post("/logout")
async def logout(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    await run_db(auth_service.logout, engine, user["session_token"])
    return {"success": True}


@router.get("/me")
async def me(user: dict = Depends(get_current_user)):
    """Return the session's user (the validate-session call)."""
    return {k: v for k, v in user.items() if k != "session_token"}


# ---------------------------------------------------------------------------
# Discord account linking
# ---------------------------------------------------------------------------
@router.get("/discord/link")
async def discord_link(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    """Redirect the signed-in user to Discord's consent screen."""
    client_id, _, redirect_uri = _oauth_env()
    state = await run_db(auth_service.create_link_state, engine, user["id"])
    params = urlencode({
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": "identify",
        "state": state,
        "prompt": "consent",
    })
    return RedirectResponse(f"{DISCORD_AUTHORIZE_URL}?{params}")


@router.get("/discord/callback")
async def discord_callback(
    code: str = Query(...),
    state: str = Query(...),
    engine=Depends(get_engine),
):
    user_id = await run_db(auth_service.consume_link_state, engine, state)
    if user_id is None:
        raise HTTPException(400, "Invalid or expired OAuth state")

    identity = await fetch_discord_identity(code)
    await run_db(
        auth_service.link_discord,
        engine,
        user_id,
        identity["id"],
        identity.get("username"),
    )
    logger.info("Linked Discord %s to user %s", identity["id"], user_id)
    return RedirectResponse(f"{_frontend_url()}/profile?discord=linked")
