"""
dreamlight.services.analytics_service — Dashboard read models
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dreamlight.constants import STAFF_ROLES
from dreamlight.database.models import (
    Application,
    AuditLog,
    ChatSession,
    ChatStatus,
    MissedChat,
    User,
    utcnow,
)
from dreamlight.services import fivem_service, security_service
from dreamlight.services.application_service import calculate_stats
from dreamlight.services.audit_service import row_to_dict

logger = logging.getLogger(__name__)


def dashboard_overview(engine, now: datetime | None = None) -> dict:
    now = now or utcnow()
    day_ago = now - timedelta(hours=24)
    with Session(engine) as session:
        apps = [row_to_dict(a) for a in session.scalars(select(Application)).all()]
        staff_count = session.scalar(
            select(func.count()).select_from(User).where(User.role.in_(STAFF_ROLES))
        )
        open_chats = session.scalar(
            select(func.count()).select_from(ChatSession)
            .where(ChatSession.status.in_((ChatStatus.WAITING, ChatStatus.ACTIVE)))
        )
        missed_24h = session.scalar(
            select(func.count()).select_from(MissedChat).where(MissedChat.created_at >= day_ago)
        )
        total_users = session.scalar(select(func.count()).select_from(User))

    return {
        "applications": calculate_stats(apps, now),
        "staff_count": staff_count or 0,
        "total_users": total_users or 0,
        "open_chats": open_chats or 0,
        "missed_chats_24h": missed_24h or 0,
        "server": fivem_service.current_stats(engine),
        "security": security_service.get_security_stats(engine),
        "generated_at": now.isoformat(),
    }


def staff_activity(engine, days: int = 7, now: datetime | None = None) -> list[dict]:
    """Audit-log event counts per staff member over the last *days* days."""
    now = now or utcnow()
    since = now - timedelta(days=days)
    with Session(engine) as session:
        staff = session.scalars(select(User).where(User.role.in_(STAFF_ROLES))).all()
        rows = session.execute(
            select(AuditLog.user_id, AuditLog.action)
            .where(AuditLog.created_at >= since, AuditLog.user_id.is_not(None))
        ).all()
        last_seen = dict(session.execute(
            select(AuditLog.user_id, func.max(AuditLog.created_at))
            .where(AuditLog.created_at >= since)
            .group_by(AuditLog.user_id)
        ).all())

    per_user: dict[str, Counter] = {}
    for user_id, action in rows:
        per_user.setdefault(user_id, Counter())[action] += 1

    result = []
    for member in staff:
        actions = per_user.get(member.id, Counter())
        last = last_seen.get(member.id)
        result.append({
            "user_id": member.id,
            "username": member.username,
            "role": member.role,
            "total_actions": sum(actions.values()),
            "actions": dict(actions.most_common()),
            "last_action_at": last.isoformat() if last else None,
        })
    result.sort(key=lambda r: r["total_actions"], reverse=True)
    return result


def system_health(engine) -> dict:
    started = time.perf_counter()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "healthy"
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        database = "error"
    return {
        "database": database,
        "api": "healthy",
        "response_time_ms": round((time.perf_counter() - started) * 1000),
    }
