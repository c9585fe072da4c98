"""
dreamlight.api.routes.analytics — Staff dashboard read models
==============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from dreamlight.api.deps import get_engine, require_permission, require_staff
from dreamlight.database.engine import run_db
from dreamlight.services import analytics_service

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/overview")
async def overview(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(analytics_service.dashboard_overview, engine)


@router.get("/staff-activity")
async def staff_activity(
    days: int = Query(7, ge=1, le=90),
    user: dict = Depends(require_permission("analytics.view")),
    engine=Depends(get_engine),
):
    return await run_db(analytics_service.staff_activity, engine, days)


@router.get("/health")
async def health(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(analytics_service.system_health, engine)
