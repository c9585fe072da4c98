"""
dreamlight.api.routes.votes — Community polls
==============================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dreamlight.api.deps import get_current_user, get_engine, get_optional_user
from dreamlight.api.rate_limit import rate_limited_staff
from dreamlight.database.engine import run_db
from dreamlight.services import vote_service

router = APIRouter(prefix="/votes", tags=["votes"])


class VoteBody(BaseModel):
    title: str
    description: str | None = None
    options: list[str] = Field(default_factory=list)
    ends_at: str | None = None
    is_active: bool = True


class CastBody(BaseModel):
    option: str


@router.get("")
async def list_votes(
    include_inactive: bool = Query(False),
    engine=Depends(get_engine),
):
    return await run_db(vote_service.list_votes, engine, active_only=not include_inactive)


@router.post("", status_code=201)
async def create_vote(
    body: VoteBody,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(vote_service.create_vote, engine, staff, body.model_dump())


@router.post("/{vote_id}/close")
async def close_vote(
    vote_id: int,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(vote_service.close_vote, engine, vote_id, actor_id=staff["id"])


@router.post("/{vote_id}/cast")
async def cast_vote(
    vote_id: int,
    body: CastBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return await run_db(vote_service.cast_vote, engine, vote_id, user["id"], body.option)


@router.get("/{vote_id}/stats")
async def vote_stats(
    vote_id: int,
    user: dict | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    stats = await run_db(vote_service.vote_stats, engine, vote_id)
    if user is not None:
        stats["user_vote"] = await run_db(vote_service.user_choice, engine, vote_id, user["id"])
    return stats
