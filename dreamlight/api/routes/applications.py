"""
dreamlight.api.routes.applications — Whitelist applications & types
====================================================================

Applicants submit and read their own applications; staff review,
close, reopen and report on them.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from dreamlight.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_mailer,
    request_ip,
    require_staff,
)
from dreamlight.api.rate_limit import rate_limited_staff
from dreamlight.config import PanelConfig
from dreamlight.constants import STAFF_ROLES
from dreamlight.database.engine import run_db
from dreamlight.services import application_service

router = APIRouter(prefix="/applications", tags=["applications"])


class ApplicationBody(BaseModel):
    application_type_id: int
    form_data: dict[str, Any] = Field(default_factory=dict)


class StatusBody(BaseModel):
    status: str
    notes: str | None = None


class ApplicationTypeBody(BaseModel):
    name: str | None = None
    description: str | None = None
    form_fields: list[dict[str, Any]] | None = None
    is_active: bool | None = None


# ---------------------------------------------------------------------------
# Application types
# ---------------------------------------------------------------------------
@router.get("/types")
async def list_types(engine=Depends(get_engine)):
    return await run_db(application_service.list_types, engine, active_only=True)


@router.get("/types/all")
async def list_all_types(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(application_service.list_types, engine, active_only=False)


@router.post("/types", status_code=201)
async def create_type(
    body: ApplicationTypeBody,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(
        application_service.create_type,
        engine,
        body.model_dump(exclude_none=True),
        actor_id=staff["id"],
    )


@router.put("/types/{type_id}")
async def update_type(
    type_id: int,
    body: ApplicationTypeBody,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(
        application_service.update_type,
        engine,
        type_id,
        body.model_dump(exclude_none=True),
        actor_id=staff["id"],
    )


@router.delete("/types/{type_id}")
async def delete_type(
    type_id: int,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    await run_db(application_service.delete_type, engine, type_id, actor_id=staff["id"])
    return {"success": True}


# ---------------------------------------------------------------------------
# Applicant side
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
async def submit(
    body: ApplicationBody,
    request: Request,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return await application_service.submit_application(
        engine,
        user,
        body.application_type_id,
        body.form_data,
        ip_address=request_ip(request),
    )


@router.get("/mine")
async def mine(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return await run_db(application_service.my_applications, engine, user["id"])


# ---------------------------------------------------------------------------
# Staff side
# ---------------------------------------------------------------------------
@router.get("")
async def list_applications(
    status: str | None = Query(None),
    search: str | None = Query(None),
    date_range: str | None = Query(None, pattern="^(7days|30days|90days|all)$"),
    type_id: int | None = Query(None),
    include_closed: bool = Query(True),
    staff: dict = Depends(require_staff),
    engine=Depends(get_engine),
):
    return await run_db(
        application_service.list_applications,
        engine,
        status=status,
        search=search,
        date_range=date_range,
        type_id=type_id,
        include_closed=include_closed,
    )


@router.get("/stats")
async def stats(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    apps = await run_db(application_service.list_applications, engine)
    return application_service.calculate_stats(apps)


@router.get("/report")
async def report(
    status: str | None = Query(None),
    date_range: str | None = Query(None),
    staff: dict = Depends(require_staff),
    engine=Depends(get_engine),
):
    apps = await run_db(
        application_service.list_applications, engine, status=status, date_range=date_range,
    )
    return application_service.generate_report(apps)


@router.get("/{app_id}")
async def get_application(
    app_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    app = await run_db(application_service.get_application, engine, app_id)
    if user.get("role") not in STAFF_ROLES and app["user_id"] != user["id"]:
        raise HTTPException(403, "Not your application")
    return app


@router.post("/{app_id}/status")
async def update_status(
    app_id: int,
    body: StatusBody,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
    cfg: PanelConfig = Depends(get_config),
    mailer=Depends(get_mailer),
):
    return await application_service.review_application(
        engine,
        mailer,
        app_id,
        body.status,
        notes=body.notes,
        reviewer=staff,
        community_name=cfg.community_name,
    )


@router.post("/{app_id}/close")
async def close(app_id: int, staff: dict = Depends(rate_limited_staff), engine=Depends(get_engine)):
    return await run_db(application_service.close_application, engine, app_id, actor_id=staff["id"])


@router.post("/{app_id}/reopen")
async def reopen(app_id: int, staff: dict = Depends(rate_limited_staff), engine=Depends(get_engine)):
    return await run_db(application_service.reopen_application, engine, app_id, actor_id=staff["id"])
