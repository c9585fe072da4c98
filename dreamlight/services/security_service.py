"""
dreamlight.services.security_service — Audit Trail & Abuse Tracking
====================================================================

Backs the staff "Security" tab:

- read/write the ``audit_logs`` trail,
- per-IP failed-login tracking with a temporary block,
- per-IP application submission limits,
- expired-session cleanup and headline counters.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from dreamlight.constants import (
    APPLICATION_RATE_LIMIT,
    APPLICATION_RATE_WINDOW_HOURS,
    FAILED_LOGIN_BLOCK_HOURS,
    FAILED_LOGIN_THRESHOLD,
    FAILED_LOGIN_WINDOW_HOURS,
)
from dreamlight.database.models import (
    ApplicationRateLimit,
    AuditLog,
    FailedLoginAttempt,
    UserSession,
    as_utc,
    utcnow,
)
from dreamlight.services.audit_service import log_action

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
def log_audit_event(
    engine,
    *,
    actor_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    with Session(engine) as session:
        log_action(
            session,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            before=old_values,
            after=new_values,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()


def get_audit_logs(
    engine,
    limit: int = 50,
    *,
    resource_type: str | None = None,
    actor_id: str | None = None,
) -> list[dict]:
    """Most recent audit rows, newest first."""
    with Session(engine) as session:
        stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        if resource_type:
            stmt = stmt.where(AuditLog.resource_type == resource_type)
        if actor_id:
            stmt = stmt.where(AuditLog.user_id == actor_id)
        rows = session.scalars(stmt.limit(max(1, min(limit, 500)))).all()
        return [
            {
                "id": r.id,
                "user_id": r.user_id,
                "action": r.action,
                "resource_type": r.resource_type,
                "resource_id": r.resource_id,
                "old_values": r.old_values,
                "new_values": r.new_values,
                "ip_address": r.ip_address,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Failed logins
# ---------------------------------------------------------------------------
def track_failed_login(engine, ip_address: str | None, email: str | None = None) -> dict:
    """Count a failed login for *ip_address*; block the IP at the threshold.

    Attempts are grouped per IP inside a rolling 24 h window.  Reaching
    ``FAILED_LOGIN_THRESHOLD`` sets a one-hour block.
    """
    if not ip_address:
        return {"attempt_count": 0, "blocked": False}

    now = utcnow()
    window_start = now - timedelta(hours=FAILED_LOGIN_WINDOW_HOURS)
    with Session(engine) as session:
        row = session.scalars(
            select(FailedLoginAttempt)
            .where(
                FailedLoginAttempt.ip_address == ip_address,
                FailedLoginAttempt.first_attempt >= window_start,
            )
            .order_by(FailedLoginAttempt.first_attempt.desc())
            .limit(1)
        ).first()

        if row is None:
            row = FailedLoginAttempt(
                ip_address=ip_address, email=email, attempt_count=1,
                first_attempt=now, last_attempt=now,
            )
            session.add(row)
        else:
            row.attempt_count += 1
            row.last_attempt = now
            row.email = email or row.email
            if row.attempt_count >= FAILED_LOGIN_THRESHOLD:
                row.blocked_until = now + timedelta(hours=FAILED_LOGIN_BLOCK_HOURS)

        session.commit()
        count = row.attempt_count
        blocked = row.blocked_until is not None

    if blocked:
        logger.warning("IP %s blocked after %d failed logins", ip_address, count)
    return {"attempt_count": count, "blocked": blocked}


def is_ip_blocked(engine, ip_address: str | None) -> bool:
    if not ip_address:
        return False
    now = utcnow()
    with Session(engine) as session:
        found = session.scalar(
            select(FailedLoginAttempt.id)
            .where(
                FailedLoginAttempt.ip_address == ip_address,
                FailedLoginAttempt.blocked_until.is_not(None),
                FailedLoginAttempt.blocked_until > now,
            )
            .limit(1)
        )
    return found is not None


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------
def check_rate_limit(engine, ip_address: str | None, limit_type: str = "application") -> dict[str, Any]:
    """Check and consume one slot of a per-IP limit.

    Only ``application`` is limited (3 per IP per 24 h); other types are
    always allowed.  The counter moves only when the request is allowed.
    """
    if limit_type != "application" or not ip_address:
        return {"allowed": True}

    now = utcnow()
    window_start = now - timedelta(hours=APPLICATION_RATE_WINDOW_HOURS)
    with Session(engine) as session:
        row = session.scalars(
            select(ApplicationRateLimit)
            .where(
                ApplicationRateLimit.ip_address == ip_address,
                ApplicationRateLimit.window_start >= window_start,
            )
            .order_by(ApplicationRateLimit.window_start.desc())
            .limit(1)
        ).first()

        if row is None:
            row = ApplicationRateLimit(ip_address=ip_address, submission_count=1, window_start=now)
            session.add(row)
            session.commit()
            reset = now + timedelta(hours=APPLICATION_RATE_WINDOW_HOURS)
            return {
                "allowed": True, "count": 1, "limit": APPLICATION_RATE_LIMIT,
                "reset_time": reset.isoformat(),
            }

        reset = as_utc(row.window_start) + timedelta(hours=APPLICATION_RATE_WINDOW_HOURS)
        if row.submission_count >= APPLICATION_RATE_LIMIT:
            return {
                "allowed": False, "count": row.submission_count,
                "limit": APPLICATION_RATE_LIMIT, "reset_time": reset.isoformat(),
            }

        row.submission_count += 1
        count = row.submission_count
        session.commit()
        return {
            "allowed": True, "count": count, "limit": APPLICATION_RATE_LIMIT,
            "reset_time": reset.isoformat(),
        }


# ---------------------------------------------------------------------------
# Sessions & stats
# ---------------------------------------------------------------------------
def cleanup_expired_sessions(engine) -> int:
    """Delete sessions past ``expires_at``.  Returns the number removed."""
    with Session(engine) as session:
        result = session.execute(
            delete(UserSession).where(UserSession.expires_at < utcnow())
        )
        session.commit()
        deleted = result.rowcount or 0
    if deleted:
        logger.info("Removed %d expired sessions", deleted)
    return deleted


def get_security_stats(engine) -> dict[str, int]:
    now = utcnow()
    since = now - timedelta(hours=24)
    with Session(engine) as session:
        audit_events = session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.created_at >= since)
        ) or 0
        failed = session.scalar(
            select(func.coalesce(func.sum(FailedLoginAttempt.attempt_count), 0))
            .where(FailedLoginAttempt.last_attempt >= since)
        ) or 0
        active_sessions = session.scalar(
            select(func.count()).select_from(UserSession).where(UserSession.expires_at > now)
        ) or 0
        blocked = session.scalar(
            select(func.count(func.distinct(FailedLoginAttempt.ip_address)))
            .where(FailedLoginAttempt.blocked_until > now)
        ) or 0
    return {
        "audit_events_24h": int(audit_events),
        "failed_logins_24h": int(failed),
        "active_sessions": int(active_sessions),
        "blocked_ips": int(blocked),
    }
