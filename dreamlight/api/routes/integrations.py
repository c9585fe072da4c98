"""
dreamlight.api.routes.integrations — Discord, Twitch, CFX, FiveM & Stripe
==========================================================================

Thin HTTP wrappers over the third-party service modules.  Outbound
clients come in through dependencies so tests can swap them out.
"""

from __future__ import annotations

import hmac
import os
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from dreamlight.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    require_permission,
    require_staff,
)
from dreamlight.api.rate_limit import rate_limited_staff
from dreamlight.config import PanelConfig
from dreamlight.constants import STAFF_ROLES
from dreamlight.database.engine import run_db
from dreamlight.services import (
    cfx_status,
    discord_service,
    fivem_service,
    payment_service,
    twitch_service,
)
from dreamlight.services.discord_service import DiscordRestClient
from dreamlight.services.payment_service import StripeClient

router = APIRouter(tags=["integrations"])

Period = Literal["week", "month", "year"]


def get_discord_client() -> DiscordRestClient:
    return discord_service.get_rest_client()


def get_stripe() -> StripeClient:
    return payment_service.get_stripe_client()


class LogBody(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class TestServerBody(BaseModel):
    address: str


class CheckoutBody(BaseModel):
    package_id: int | None = None
    custom_amount: float | None = None


# ---------------------------------------------------------------------------
# Discord
# ---------------------------------------------------------------------------
@router.post("/discord/sync-roles")
async def sync_roles(
    user_id: str | None = Query(None),
    user: dict = Depends(get_current_user),
    client: DiscordRestClient = Depends(get_discord_client),
    engine=Depends(get_engine),
):
    """Sync the caller's roles, or *user_id*'s when the caller is staff."""
    target = user_id or user["id"]
    if target != user["id"] and user.get("role") not in STAFF_ROLES:
        raise HTTPException(403, "Staff access required")
    return await discord_service.sync_user_roles(engine, client, target, actor_id=user["id"])


@router.get("/discord/verify")
async def verify_bot(
    staff: dict = Depends(require_staff),
    cfg: PanelConfig = Depends(get_config),
    client: DiscordRestClient = Depends(get_discord_client),
):
    return await discord_service.verify_bot_permissions(client, cfg.guild_id)


@router.get("/discord/stats")
async def discord_stats(
    cfg: PanelConfig = Depends(get_config),
    client: DiscordRestClient = Depends(get_discord_client),
):
    return await discord_service.guild_stats(client, cfg.guild_id)


@router.post("/discord/log")
async def discord_log(
    body: LogBody,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await discord_service.send_log(engine, body.type, body.data)


# ---------------------------------------------------------------------------
# Twitch & CFX
# ---------------------------------------------------------------------------
@router.get("/twitch/streams")
async def twitch_streams(engine=Depends(get_engine)):
    return await twitch_service.fetch_streams(engine)


@router.get("/cfx/status")
async def cfx():
    return await cfx_status.get_status()


# ---------------------------------------------------------------------------
# FiveM server
# ---------------------------------------------------------------------------
@router.get("/server/stats")
async def server_stats(engine=Depends(get_engine)):
    return {"stats": await run_db(fivem_service.current_stats, engine)}


@router.post("/server/stats/refresh")
async def refresh_stats(
    staff: dict = Depends(require_permission("server.manage")),
    engine=Depends(get_engine),
):
    return await fivem_service.refresh_server_stats(engine)


@router.post("/server/test")
async def test_server(
    body: TestServerBody,
    staff: dict = Depends(require_permission("server.manage")),
):
    return await fivem_service.test_server(body.address)


@router.get("/server/performance")
async def server_performance(
    hours: int = Query(24, ge=1, le=24 * 30),
    staff: dict = Depends(require_staff),
    engine=Depends(get_engine),
):
    return {
        "summary": await run_db(fivem_service.performance_summary, engine, hours),
        "history": await run_db(fivem_service.stats_history, engine, hours),
    }


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
@router.post("/payments/checkout")
async def checkout(
    body: CheckoutBody,
    request: Request,
    user: dict = Depends(get_current_user),
    client: StripeClient = Depends(get_stripe),
    engine=Depends(get_engine),
):
    return await payment_service.create_checkout(
        engine,
        client,
        user,
        origin=request.headers.get("origin") or "",
        package_id=body.package_id,
        custom_amount=body.custom_amount,
    )


def verify_webhook_secret(
    x_webhook_secret: Annotated[str | None, Header()] = None,
) -> None:
    """The store posts ``X-Webhook-Secret``; it must match ``PURCHASE_WEBHOOK_SECRET``."""
    expected = os.getenv("PURCHASE_WEBHOOK_SECRET", "").strip()
    if not expected:
        raise HTTPException(503, "Purchase webhook is not configured")
    if not x_webhook_secret or not hmac.compare_digest(
        x_webhook_secret.encode(), expected.encode(),
    ):
        raise HTTPException(401, "Invalid webhook secret")


@router.post("/payments/webhook", dependencies=[Depends(verify_webhook_secret)])
async def purchase_webhook(payload: dict[str, Any], engine=Depends(get_engine)):
    return await payment_service.handle_purchase_webhook(engine, payload)


@router.get("/payments/overview")
async def financial_overview(
    period: Period = Query("month"),
    user: dict = Depends(require_permission("analytics.view")),
    engine=Depends(get_engine),
):
    return await run_db(payment_service.financial_overview, engine, period)


@router.get("/payments/chart")
async def revenue_chart(
    period: Period = Query("month"),
    user: dict = Depends(require_permission("analytics.view")),
    engine=Depends(get_engine),
):
    return await run_db(payment_service.revenue_chart, engine, period)


@router.post("/payments/sync")
async def sync_stripe(
    period: Period = Query("month"),
    user: dict = Depends(require_permission("analytics.view")),
    client: StripeClient = Depends(get_stripe),
    engine=Depends(get_engine),
):
    return await payment_service.sync_stripe_data(engine, client, period)
