"""
dreamlight.services.chat_service — Live Support Chat
=====================================================

Visitors open a session (``waiting``), a staff member claims it
(``active``), and either side can close it (``closed``).  A periodic
sweep turns sessions that sat in ``waiting`` past the configured timeout
into ``missed_chats`` rows and emails staff about them.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dreamlight.constants import DEFAULT_MISSED_CHAT_TIMEOUT_MINUTES, STAFF_ROLES
from dreamlight.database.engine import run_db
from dreamlight.database.models import (
    CannedResponse,
    ChatAnalytics,
    ChatMessage,
    ChatSession,
    ChatStatus,
    MissedChat,
    User,
    as_utc,
    utcnow,
)
from dreamlight.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from dreamlight.services.audit_service import row_to_dict
from dreamlight.services.email_service import ResendClient, send_templated
from dreamlight.services.settings_service import get_setting_dict

logger = logging.getLogger(__name__)

SENDER_TYPES = ("visitor", "staff", "system")


def _session_dict(chat: ChatSession) -> dict:
    data = row_to_dict(chat)
    data.pop("visitor_token", None)
    return data


# ---------------------------------------------------------------------------
# Sessions & messages
# ---------------------------------------------------------------------------
def start_session(
    engine,
    *,
    visitor_name: str | None,
    visitor_email: str | None,
    user_id: str | None = None,
    first_message: str | None = None,
) -> dict:
    visitor_name = (visitor_name or "").strip() or None
    if not (visitor_name or user_id):
        raise ValidationError("A name is required to start a chat")
    with Session(engine, expire_on_commit=False) as session:
        chat = ChatSession(
            user_id=user_id,
            visitor_name=visitor_name,
            visitor_email=(visitor_email or "").strip().lower() or None,
            visitor_token=None if user_id else secrets.token_urlsafe(32),
            status=ChatStatus.WAITING,
        )
        session.add(chat)
        session.flush()
        if first_message and first_message.strip():
            session.add(ChatMessage(
                session_id=chat.id,
                sender_type="visitor",
                sender_id=user_id,
                message=first_message.strip(),
            ))
        session.commit()
        logger.info("Chat session %s opened by %s", chat.id, visitor_name or user_id)
        # The only time the visitor token leaves the server
        return {**_session_dict(chat), "visitor_token": chat.visitor_token}


def post_message(
    engine, session_id: int, *, sender_type: str, sender_id: str | None, body: str,
) -> dict:
    if sender_type not in SENDER_TYPES:
        raise ValidationError(f"Invalid sender type: {sender_type}")
    text = (body or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    with Session(engine, expire_on_commit=False) as session:
        chat = session.get(ChatSession, session_id)
        if chat is None:
            raise NotFoundError("Chat session not found")
        if chat.status == ChatStatus.CLOSED:
            raise ConflictError("Chat session is closed")
        msg = ChatMessage(
            session_id=session_id, sender_type=sender_type, sender_id=sender_id, message=text,
        )
        session.add(msg)
        chat.updated_at = utcnow()
        session.commit()
        return row_to_dict(msg)


def claim_session(engine, session_id: int, staff: dict) -> dict:
    """Assign a waiting (or re-assign an active) session to *staff*."""
    with Session(engine, expire_on_commit=False) as session:
        chat = session.get(ChatSession, session_id)
        if chat is None:
            raise NotFoundError("Chat session not found")
        if chat.status == ChatStatus.CLOSED:
            raise ConflictError("Chat session is closed")
        chat.status = ChatStatus.ACTIVE
        chat.assigned_to = staff["id"]
        session.add(ChatMessage(
            session_id=session_id,
            sender_type="system",
            message=f"{staff.get('username') or 'A staff member'} joined the chat",
        ))
        session.commit()
        return _session_dict(chat)


def close_session(engine, session_id: int) -> dict:
    with Session(engine, expire_on_commit=False) as session:
        chat = session.get(ChatSession, session_id)
        if chat is None:
            raise NotFoundError("Chat session not found")
        if chat.status != ChatStatus.CLOSED:
            chat.status = ChatStatus.CLOSED
            chat.closed_at = utcnow()
            session.commit()
        return _session_dict(chat)


def list_sessions(engine, status: str | None = None, limit: int = 100) -> list[dict]:
    with Session(engine) as session:
        stmt = select(ChatSession).order_by(ChatSession.created_at.desc()).limit(limit)
        if status and status != "all":
            if status not in ChatStatus.__members__.values():
                raise ValidationError(f"Invalid status: {status}")
            stmt = stmt.where(ChatSession.status == status)
        return [_session_dict(c) for c in session.scalars(stmt).all()]


def get_session_for(engine, session_id: int) -> dict:
    with Session(engine) as session:
        chat = session.get(ChatSession, session_id)
        if chat is None:
            raise NotFoundError("Chat session not found")
        return _session_dict(chat)


def visitor_token_matches(engine, session_id: int, token: str | None) -> bool:
    """Whether *token* opens anonymous session *session_id*."""
    if not token:
        return False
    with Session(engine) as session:
        expected = session.scalar(
            select(ChatSession.visitor_token).where(ChatSession.id == session_id)
        )
    return bool(expected) and hmac.compare_digest(expected.encode(), token.encode())


def get_messages(engine, session_id: int) -> list[dict]:
    with Session(engine) as session:
        if session.get(ChatSession, session_id) is None:
            raise NotFoundError("Chat session not found")
        rows = session.scalars(
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at, ChatMessage.id)
        ).all()
        return [row_to_dict(m) for m in rows]


def list_canned_responses(engine) -> list[dict]:
    with Session(engine) as session:
        rows = session.scalars(
            select(CannedResponse)
            .where(CannedResponse.is_active.is_(True))
            .order_by(CannedResponse.category, CannedResponse.order_index)
        ).all()
        return [row_to_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Missed-chat sweep
# ---------------------------------------------------------------------------
def missed_chat_timeout(engine) -> int:
    with Session(engine) as session:
        settings = get_setting_dict(session, "notification_settings")
    try:
        return int(settings.get("missed_chat_timeout") or DEFAULT_MISSED_CHAT_TIMEOUT_MINUTES)
    except (TypeError, ValueError):
        return DEFAULT_MISSED_CHAT_TIMEOUT_MINUTES


def staff_emails_enabled(engine) -> bool:
    with Session(engine) as session:
        settings = get_setting_dict(session, "notification_settings")
    return bool(settings.get("email_staff_on_missed_chat", True))


def record_missed_chats(engine, now: datetime, timeout_minutes: int) -> list[dict]:
    """Insert one ``missed_chats`` row per overdue waiting session.

    Sessions that already have a row are skipped; a concurrent insert
    losing the unique race is skipped too.
    """
    cutoff = now - timedelta(minutes=timeout_minutes)
    with Session(engine) as session:
        already = select(MissedChat.session_id)
        overdue = session.scalars(
            select(ChatSession).where(
                ChatSession.status == ChatStatus.WAITING,
                ChatSession.created_at < cutoff,
                ChatSession.id.not_in(already),
            ).order_by(ChatSession.created_at)
        ).all()
        candidates = [
            (c.id, c.visitor_name, c.visitor_email, as_utc(c.created_at)) for c in overdue
        ]

    recorded: list[dict] = []
    for session_id, name, email, created in candidates:
        wait = round((now - created).total_seconds() / 60)
        try:
            with Session(engine) as session:
                session.add(MissedChat(
                    session_id=session_id,
                    visitor_name=name,
                    visitor_email=email,
                    wait_time_minutes=wait,
                ))
                session.add(ChatAnalytics(
                    session_id=session_id,
                    metric_type="missed_chat",
                    metric_value=1,
                    metadata_={
                        "wait_time_minutes": wait,
                        "visitor_name": name,
                        "visitor_email": email,
                    },
                ))
                session.commit()
        except IntegrityError:
            logger.info("Missed chat for session %s already recorded", session_id)
            continue
        recorded.append({
            "session_id": session_id,
            "visitor_name": name,
            "visitor_email": email,
            "wait_time_minutes": wait,
        })
    return recorded


def staff_recipients(engine) -> list[dict]:
    with Session(engine) as session:
        rows = session.scalars(
            select(User).where(
                User.role.in_(STAFF_ROLES),
                User.banned.is_(False),
                User.email.is_not(None),
            )
        ).all()
        return [{"email": u.email, "username": u.username} for u in rows]


def _mark_notified(engine, session_id: int) -> None:
    with Session(engine) as session:
        row = session.scalars(select(MissedChat).where(MissedChat.session_id == session_id)).first()
        if row is not None:
            row.notified_staff = True
            session.commit()


async def detect_missed_chats(
    engine, mailer: ResendClient | None = None, now: datetime | None = None,
) -> dict:
    """Record overdue waiting chats and email staff about each one."""
    now = now or utcnow()
    timeout = await run_db(missed_chat_timeout, engine)
    missed = await run_db(record_missed_chats, engine, now, timeout)

    emails_sent = 0
    if missed and await run_db(staff_emails_enabled, engine):
        staff = await run_db(staff_recipients, engine)
        for chat in missed:
            delivered = 0
            for member in staff:
                try:
                    if await send_templated(engine, mailer, "missed_chat", member["email"], {
                        "visitor_name": chat["visitor_name"] or "Anonymous visitor",
                        "visitor_email": chat["visitor_email"] or "not provided",
                        "wait_minutes": chat["wait_time_minutes"],
                        "staff_name": member["username"],
                    }):
                        delivered += 1
                except UpstreamError as exc:
                    logger.error("Missed-chat email to %s failed: %s", member["email"], exc.message)
            if delivered:
                await run_db(_mark_notified, engine, chat["session_id"])
            emails_sent += delivered

    if missed:
        logger.info("Processed %d missed chats, sent %d emails", len(missed), emails_sent)
    return {
        "processed_count": len(missed),
        "emails_sent": emails_sent,
        "timeout_minutes": timeout,
    }
