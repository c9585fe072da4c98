"""
dreamlight.services.vote_service — Community Polls
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dreamlight.database.models import CommunityVote, CommunityVoteResponse, as_utc, utcnow
from dreamlight.errors import NotFoundError, ValidationError
from dreamlight.services.audit_service import log_action, row_to_dict

logger = logging.getLogger(__name__)


def _parse_ends_at(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError("ends_at must be an ISO-8601 timestamp") from None


def create_vote(engine, user: dict, data: dict) -> dict:
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("Title is required")
    options: list[str] = []
    for raw in data.get("options") or []:
        option = str(raw).strip()
        if option and option not in options:
            options.append(option)
    if len(options) < 2:
        raise ValidationError("A vote needs at least two options")

    with Session(engine, expire_on_commit=False) as session:
        vote = CommunityVote(
            title=title,
            description=data.get("description"),
            options=options,
            is_active=bool(data.get("is_active", True)),
            ends_at=_parse_ends_at(data.get("ends_at")),
            created_by=user.get("id"),
        )
        session.add(vote)
        session.flush()
        log_action(
            session,
            actor_id=user.get("id"),
            action="create",
            resource_type="community_votes",
            resource_id=str(vote.id),
            after=row_to_dict(vote),
        )
        session.commit()
        return row_to_dict(vote)


def close_vote(engine, vote_id: int, *, actor_id: str | None) -> dict:
    with Session(engine, expire_on_commit=False) as session:
        vote = session.get(CommunityVote, vote_id)
        if vote is None:
            raise NotFoundError("Vote not found")
        vote.is_active = False
        log_action(
            session, actor_id=actor_id, action="close_vote",
            resource_type="community_votes", resource_id=str(vote_id),
        )
        session.commit()
        return row_to_dict(vote)


def list_votes(engine, *, active_only: bool = True) -> list[dict]:
    with Session(engine) as session:
        stmt = select(CommunityVote).order_by(CommunityVote.created_at.desc())
        if active_only:
            stmt = stmt.where(CommunityVote.is_active.is_(True))
        return [row_to_dict(v) for v in session.scalars(stmt).all()]


def cast_vote(engine, vote_id: int, user_id: str, option: str, now: datetime | None = None) -> dict:
    """Record (or change) *user_id*'s choice on an open vote."""
    now = now or utcnow()
    with Session(engine) as session:
        vote = session.get(CommunityVote, vote_id)
        if vote is None or not vote.is_active:
            raise NotFoundError("Vote not found or inactive")
        if vote.ends_at is not None and now > as_utc(vote.ends_at):
            raise ValidationError("Voting period has ended")
        if option not in (vote.options or []):
            raise ValidationError("Invalid option")

        response = session.scalars(
            select(CommunityVoteResponse).where(
                CommunityVoteResponse.vote_id == vote_id,
                CommunityVoteResponse.user_id == user_id,
            )
        ).first()
        if response is None:
            session.add(CommunityVoteResponse(vote_id=vote_id, user_id=user_id, selected_option=option))
        else:
            response.selected_option = option
        session.commit()
    return {"success": True, "message": "Vote cast successfully"}


def vote_stats(engine, vote_id: int) -> dict:
    with Session(engine) as session:
        if session.get(CommunityVote, vote_id) is None:
            raise NotFoundError("Vote not found")
        rows = session.execute(
            select(CommunityVoteResponse.selected_option, func.count())
            .where(CommunityVoteResponse.vote_id == vote_id)
            .group_by(CommunityVoteResponse.selected_option)
        ).all()
    counts = {option: n for option, n in rows}
    return {"vote_counts": counts, "total_votes": sum(counts.values())}


def user_choice(engine, vote_id: int, user_id: str) -> str | None:
    with Session(engine) as session:
        return session.scalar(
            select(CommunityVoteResponse.selected_option).where(
                CommunityVoteResponse.vote_id == vote_id,
                CommunityVoteResponse.user_id == user_id,
            )
        )
