"""
dreamlight.api.routes.content — Public site content & staff managers
=====================================================================

Public reads (``GET /rules``, ``/partners``, ``/team``, ``/packages``,
``/streamers``) return active rows only.  Staff edit each table through
one ``POST /manage/{entity}`` endpoint taking ``{action, data, id}``.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from dreamlight.api.deps import get_engine, require_admin
from dreamlight.api.rate_limit import rate_limited_staff
from dreamlight.database.engine import run_db
from dreamlight.services import content_service

router = APIRouter(tags=["content"])


class ManageRequest(BaseModel):
    action: Literal["create", "update", "delete", "fetch"]
    data: dict[str, Any] = Field(default_factory=dict)
    id: int | None = None


class EmailTemplateBody(BaseModel):
    template_type: str
    subject: str
    body: str
    is_active: bool = True


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------
@router.get("/rules")
async def public_rules(engine=Depends(get_engine)):
    return await run_db(content_service.public_items, engine, "rules")


@router.get("/partners")
async def public_partners(engine=Depends(get_engine)):
    return await run_db(content_service.public_items, engine, "partners")


@router.get("/team")
async def public_team(engine=Depends(get_engine)):
    return await run_db(content_service.public_items, engine, "team_members")


@router.get("/packages")
async def public_packages(engine=Depends(get_engine)):
    return await run_db(content_service.public_items, engine, "packages")


@router.get("/streamers")
async def public_streamers(engine=Depends(get_engine)):
    return await run_db(content_service.public_items, engine, "twitch_streamers")


# ---------------------------------------------------------------------------
# Staff managers
# ---------------------------------------------------------------------------
@router.post("/manage/{entity}")
async def manage(
    entity: str,
    body: ManageRequest,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    if entity == "rules":
        return await content_service.manage_rules(
            engine, body.action, staff, data=body.data, item_id=body.id,
        )
    return await run_db(
        content_service.manage_content,
        engine,
        entity,
        body.action,
        staff,
        data=body.data,
        item_id=body.id,
    )


# ---------------------------------------------------------------------------
# Email templates
# ---------------------------------------------------------------------------
@router.get("/email-templates")
async def list_email_templates(admin: dict = Depends(require_admin), engine=Depends(get_engine)):
    return await run_db(content_service.list_email_templates, engine, admin)


@router.put("/email-templates")
async def upsert_email_template(
    body: EmailTemplateBody,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(content_service.upsert_email_template, engine, admin, body.model_dump())


@router.delete("/email-templates/{template_id}")
async def delete_email_template(
    template_id: int,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    await run_db(content_service.delete_email_template, engine, admin, template_id)
    return {"success": True}
