"""
dreamlight.api.routes.chat — Live support chat
================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from dreamlight.api.deps import get_engine, get_mailer, get_optional_user, require_staff
from dreamlight.api.rate_limit import rate_limited_staff
from dreamlight.constants import STAFF_ROLES
from dreamlight.database.engine import run_db
from dreamlight.services import chat_service

router = APIRouter(prefix="/chat", tags=["chat"])


class StartChatBody(BaseModel):
    visitor_name: str | None = None
    visitor_email: str | None = None
    message: str | None = None


class MessageBody(BaseModel):
    message: str


def _is_staff(user: dict | None) -> bool:
    return bool(user) and user.get("role") in STAFF_ROLES


async def _check_access(engine, chat: dict, user: dict | None, chat_token: str | None) -> None:
    """Staff see every session.

    An account-owned session is private to its owner; an anonymous one
    needs the ``X-Chat-Token`` handed out when it was started.
    """
    if _is_staff(user):
        return
    if chat.get("user_id") is None:
        if not await run_db(chat_service.visitor_token_matches, engine, chat["id"], chat_token):
            raise HTTPException(403, "Not your chat session")
        return
    if user is None or chat["user_id"] != user["id"]:
        raise HTTPException(403, "Not your chat session")


@router.post("/sessions", status_code=201)
async def start_chat(
    body: StartChatBody,
    user: dict | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    return await run_db(
        chat_service.start_session,
        engine,
        visitor_name=body.visitor_name or (user or {}).get("username"),
        visitor_email=body.visitor_email or (user or {}).get("email"),
        user_id=user["id"] if user else None,
        first_message=body.message,
    )


@router.get("/sessions")
async def list_sessions(
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    staff: dict = Depends(require_staff),
    engine=Depends(get_engine),
):
    return await run_db(chat_service.list_sessions, engine, status, limit)


@router.get("/sessions/{session_id}/messages")
async def get_messages(
    session_id: int,
    user: dict | None = Depends(get_optional_user),
    x_chat_token: Annotated[str | None, Header()] = None,
    engine=Depends(get_engine),
):
    chat = await run_db(chat_service.get_session_for, engine, session_id)
    await _check_access(engine, chat, user, x_chat_token)
    return {
        "session": chat,
        "messages": await run_db(chat_service.get_messages, engine, session_id),
    }


@router.post("/sessions/{session_id}/messages", status_code=201)
async def post_message(
    session_id: int,
    body: MessageBody,
    user: dict | None = Depends(get_optional_user),
    x_chat_token: Annotated[str | None, Header()] = None,
    engine=Depends(get_engine),
):
    chat = await run_db(chat_service.get_session_for, engine, session_id)
    await _check_access(engine, chat, user, x_chat_token)
    return await run_db(
        chat_service.post_message,
        engine,
        session_id,
        sender_type="staff" if _is_staff(user) else "visitor",
        sender_id=user["id"] if user else None,
        body=body.message,
    )


@router.post("/sessions/{session_id}/claim")
async def claim(
    session_id: int,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(chat_service.claim_session, engine, session_id, staff)


@router.post("/sessions/{session_id}/close")
async def close(
    session_id: int,
    user: dict | None = Depends(get_optional_user),
    x_chat_token: Annotated[str | None, Header()] = None,
    engine=Depends(get_engine),
):
    chat = await run_db(chat_service.get_session_for, engine, session_id)
    await _check_access(engine, chat, user, x_chat_token)
    return await run_db(chat_service.close_session, engine, session_id)


@router.get("/canned-responses")
async def canned_responses(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(chat_service.list_canned_responses, engine)


@router.post("/missed/detect")
async def detect_missed(
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
    mailer=Depends(get_mailer),
):
    """Run the missed-chat sweep now instead of waiting for the bot task."""
    return await chat_service.detect_missed_chats(engine, mailer)
