"""
dreamlight.services.application_service — Whitelist Applications
=================================================================

Submission, validation, review and reporting for whitelist / staff /
job applications.  Each ``application_types`` row carries its own form
definition (a JSON list of fields); every form gets a system
``discord_name`` field so staff can always find the applicant.

Status machine::

    pending ──► under_review ──► approved
       │  ▲          │
       │  └──────────┘           (under_review may go back to pending)
       ├──────────────────────► approved | rejected
    approved / rejected are terminal; ``reopen`` puts them back to pending.

Closed applications are frozen until reopened.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from dreamlight.database.engine import run_db
from dreamlight.database.models import (
    Application,
    ApplicationStatus,
    ApplicationType,
    User,
    as_utc,
    utcnow,
)
from dreamlight.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from dreamlight.services import discord_service, security_service
from dreamlight.services.audit_service import (
    audited_create,
    audited_delete,
    audited_update,
    log_action,
    row_to_dict,
)
from dreamlight.services.email_service import ResendClient, send_templated
from dreamlight.services.settings_service import get_setting_dict

logger = logging.getLogger(__name__)

FIELD_TYPES = ("text", "textarea", "select", "number", "email", "checkbox")
_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")

TRANSITIONS: dict[str, frozenset[str]] = {
    ApplicationStatus.PENDING: frozenset({
        ApplicationStatus.UNDER_REVIEW, ApplicationStatus.APPROVED, ApplicationStatus.REJECTED,
    }),
    ApplicationStatus.UNDER_REVIEW: frozenset({
        ApplicationStatus.APPROVED, ApplicationStatus.REJECTED, ApplicationStatus.PENDING,
    }),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}

OPEN_STATUSES = (ApplicationStatus.PENDING, ApplicationStatus.UNDER_REVIEW)

DATE_RANGES = {"7days": 7, "30days": 30, "90days": 90}

# Discord webhook log type per review outcome
_STATUS_LOG_TYPES = {
    ApplicationStatus.APPROVED: "application_approved",
    ApplicationStatus.REJECTED: "application_denied",
    ApplicationStatus.UNDER_REVIEW: "application_under_review",
}

DISCORD_FIELD = {
    "id": "discord_name",
    "key": "discord_name",
    "label": "Discord Username",
    "type": "text",
    "required": True,
    "system": True,
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def field_key(field: dict) -> str:
    return field.get("key") or field.get("id") or ""


def ensure_discord_field(fields: list[dict]) -> list[dict]:
    """Prepend the system ``discord_name`` field, dropping any copies."""
    rest = [f for f in fields if field_key(f) != "discord_name"]
    return [dict(DISCORD_FIELD), *rest]


def validate_form_data(fields: list[dict], data: dict[str, Any]) -> dict[str, str]:
    """Return ``{field_key: message}`` for every invalid field."""
    errors: dict[str, str] = {}
    for field in fields:
        key = field_key(field)
        raw = data.get(key)
        if isinstance(raw, str):
            value: Any = raw.strip()
        elif raw is False:
            value = ""
        else:
            value = raw

        if field.get("required") and (value is None or value == ""):
            errors[key] = f"{field.get('label', key)} is required"
        elif field.get("type") == "email" and value and not _EMAIL_RE.search(str(value)):
            errors[key] = "Please enter a valid email address"
        elif field.get("type") == "number" and value not in (None, ""):
            try:
                float(value)
            except (TypeError, ValueError):
                errors[key] = "Please enter a valid number"
    return errors


def validate_field_definitions(fields: list[dict]) -> None:
    seen: set[str] = set()
    for field in fields:
        key = field_key(field)
        if not key:
            raise ValidationError("Every form field needs a key")
        if key in seen:
            raise ValidationError(f"Duplicate form field: {key}")
        seen.add(key)
        if field.get("type", "text") not in FIELD_TYPES:
            raise ValidationError(f"Unsupported field type: {field.get('type')}")
        if field.get("type") == "select" and not field.get("options"):
            raise ValidationError(f"Select field '{key}' needs options")


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def calculate_stats(apps: list[dict], now: datetime | None = None) -> dict[str, int]:
    """Headline counters over serialized applications."""
    now = now or utcnow()
    week_ago = now - timedelta(days=7)
    by_status = {s: 0 for s in ApplicationStatus}
    recent = 0
    for app in apps:
        if app["status"] in by_status:
            by_status[app["status"]] += 1
        created = app.get("created_at")
        if created and as_utc(datetime.fromisoformat(created)) >= week_ago:
            recent += 1
    approved = by_status[ApplicationStatus.APPROVED]
    rejected = by_status[ApplicationStatus.REJECTED]
    processed = approved + rejected
    return {
        "total": len(apps),
        "pending": by_status[ApplicationStatus.PENDING],
        "approved": approved,
        "rejected": rejected,
        "under_review": by_status[ApplicationStatus.UNDER_REVIEW],
        "recent_count": recent,
        "approval_rate": round(approved / processed * 100) if processed else 0,
    }


def generate_report(apps: list[dict], now: datetime | None = None) -> dict:
    now = now or utcnow()
    stats = calculate_stats(apps, now)
    return {
        "summary": {
            "total_applications": stats["total"],
            "approval_rate": f"{stats['approval_rate']}%",
            "recent_activity": stats["recent_count"],
            "generated_at": now.isoformat(),
        },
        "status_breakdown": {
            "pending": stats["pending"],
            "under_review": stats["under_review"],
            "approved": stats["approved"],
            "rejected": stats["rejected"],
        },
        "applications": [
            {
                "id": a["id"],
                "applicant": a.get("applicant_username") or "Unknown",
                "email": a.get("applicant_email"),
                "discord_name": a.get("discord_name"),
                "status": a["status"],
                "submitted_at": a.get("created_at"),
                "reviewed_at": a.get("reviewed_at"),
                "notes": a.get("review_notes"),
            }
            for a in apps
        ],
    }


def application_to_dict(app: Application, user: User | None = None) -> dict:
    data = row_to_dict(app)
    data["application_type_name"] = app.application_type.name if app.application_type else None
    if user is not None:
        data["applicant_username"] = user.username
        data["applicant_email"] = user.email
    return data


# ---------------------------------------------------------------------------
# Application types
# ---------------------------------------------------------------------------
def list_types(engine, *, active_only: bool = True) -> list[dict]:
    with Session(engine) as session:
        stmt = select(ApplicationType).order_by(ApplicationType.name)
        if active_only:
            stmt = stmt.where(ApplicationType.is_active.is_(True))
        return [row_to_dict(t) for t in session.scalars(stmt).all()]


def create_type(engine, data: dict, *, actor_id: str | None) -> dict:
    if not (data.get("name") or "").strip():
        raise ValidationError("Application type name is required")
    fields = ensure_discord_field(list(data.get("form_fields") or []))
    validate_field_definitions(fields)
    row = ApplicationType(
        name=data["name"].strip(),
        description=data.get("description"),
        form_fields=fields,
        is_active=bool(data.get("is_active", True)),
    )
    return row_to_dict(audited_create(engine, row, resource_type="application_types", actor_id=actor_id))


def update_type(engine, type_id: int, data: dict, *, actor_id: str | None) -> dict:
    fields = dict(data)
    if "form_fields" in fields:
        fields["form_fields"] = ensure_discord_field(list(fields["form_fields"] or []))
        validate_field_definitions(fields["form_fields"])
    row = audited_update(
        engine, ApplicationType, type_id,
        resource_type="application_types", actor_id=actor_id, **fields,
    )
    if row is None:
        raise NotFoundError("Application type not found")
    return row_to_dict(row)


def delete_type(engine, type_id: int, *, actor_id: str | None) -> None:
    with Session(engine) as session:
        in_use = session.scalar(
            select(func.count()).select_from(Application)
            .where(Application.application_type_id == type_id)
        )
    if in_use:
        raise ConflictError("Application type has submissions; deactivate it instead")
    if not audited_delete(engine, ApplicationType, type_id, resource_type="application_types", actor_id=actor_id):
        raise NotFoundError("Application type not found")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------
def create_application(
    engine,
    user: dict,
    type_id: int,
    form_data: dict[str, Any],
    *,
    ip_address: str | None = None,
) -> dict:
    """Validate and store a new application (no side effects)."""
    with Session(engine) as session:
        settings = get_setting_dict(session, "application_settings")
        if not settings.get("accept_applications", True):
            raise ForbiddenError("Applications are currently closed")
        app_type = session.get(ApplicationType, type_id)
        if app_type is None or not app_type.is_active:
            raise NotFoundError("Application type not found")
        fields = ensure_discord_field(list(app_type.form_fields or []))

    errors = validate_form_data(fields, form_data)
    if errors:
        raise ValidationError("Please fix the highlighted fields", fields=errors)

    with Session(engine) as session:
        if not settings.get("multiple_applications_allowed", False):
            open_app = session.scalar(
                select(Application.id).where(
                    Application.user_id == user["id"],
                    Application.application_type_id == type_id,
                    Application.status.in_(OPEN_STATUSES),
                    Application.closed.is_(False),
                )
            )
            if open_app:
                raise ConflictError("You already have an open application of this type")

        cooldown_days = int(settings.get("cooldown_days") or 0)
        if cooldown_days > 0:
            last_rejection = session.scalar(
                select(func.max(Application.reviewed_at)).where(
                    Application.user_id == user["id"],
                    Application.application_type_id == type_id,
                    Application.status == ApplicationStatus.REJECTED,
                )
            )
            if last_rejection is not None:
                available = as_utc(last_rejection) + timedelta(days=cooldown_days)
                if available > utcnow():
                    raise ConflictError(
                        "You must wait before reapplying",
                        available_at=available.isoformat(),
                    )

    limit = security_service.check_rate_limit(engine, ip_address, "application")
    if not limit["allowed"]:
        raise RateLimitedError(
            "Too many applications from this address. Try again later.",
            reset_time=limit.get("reset_time"),
        )

    def _text(key: str) -> str | None:
        value = form_data.get(key)
        return str(value).strip() if value not in (None, "") else None

    with Session(engine, expire_on_commit=False) as session:
        app = Application(
            user_id=user["id"],
            application_type_id=type_id,
            steam_name=_text("steam_name"),
            discord_name=_text("discord_name"),
            fivem_name=_text("fivem_name"),
            form_data=dict(form_data),
            status=ApplicationStatus.PENDING,
            ip_address=ip_address,
        )
        session.add(app)
        session.flush()
        log_action(
            session,
            actor_id=user["id"],
            action="submit_application",
            resource_type="applications",
            resource_id=str(app.id),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(app)
        result = application_to_dict(app)
    logger.info("Application %s submitted by %s", result["id"], user.get("email"))
    return result


async def submit_application(
    engine,
    user: dict,
    type_id: int,
    form_data: dict[str, Any],
    *,
    ip_address: str | None = None,
) -> dict:
    app = await run_db(create_application, engine, user, type_id, form_data, ip_address=ip_address)
    await discord_service.send_log_quietly(engine, "application_submitted", {
        **app["form_data"],
        "steam_name": app["steam_name"],
        "discord_name": app["discord_name"],
        "fivem_name": app["fivem_name"],
        "application_type": app["application_type_name"],
    })
    return app


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------
def set_status(
    engine, app_id: int, status: str, *, notes: str | None, reviewer_id: str | None,
) -> tuple[dict, dict | None]:
    """Apply a status change; returns ``(application, applicant)``."""
    if status not in TRANSITIONS:
        raise ValidationError(f"Invalid status: {status}")
    with Session(engine, expire_on_commit=False) as session:
        app = session.get(Application, app_id)
        if app is None:
            raise NotFoundError("Application not found")
        if app.closed:
            raise ConflictError("Application is closed")
        if not can_transition(app.status, status):
            raise ConflictError(f"Cannot change status from {app.status} to {status}")
        before = {"status": app.status, "review_notes": app.review_notes}
        app.status = status
        if notes is not None:
            app.review_notes = notes
        app.reviewed_by = reviewer_id
        app.reviewed_at = utcnow()
        log_action(
            session,
            actor_id=reviewer_id,
            action=f"application_{status}",
            resource_type="applications",
            resource_id=str(app_id),
            before=before,
            after={"status": status, "review_notes": app.review_notes},
        )
        session.commit()
        applicant = session.get(User, app.user_id)
        return (
            application_to_dict(app, applicant),
            applicant.to_public_dict() if applicant else None,
        )


async def review_application(
    engine,
    mailer: ResendClient | None,
    app_id: int,
    status: str,
    *,
    notes: str | None,
    reviewer: dict,
    community_name: str,
) -> dict:
    """Change status, then notify Discord and the applicant (best-effort)."""
    app, applicant = await run_db(
        set_status, engine, app_id, status, notes=notes, reviewer_id=reviewer.get("id"),
    )

    log_type = _STATUS_LOG_TYPES.get(status)
    if log_type:
        await discord_service.send_log_quietly(engine, log_type, {
            "steam_name": app["steam_name"],
            "discord_name": app["discord_name"],
            "fivem_name": app["fivem_name"],
            "review_notes": app["review_notes"],
        })

    if applicant and status != ApplicationStatus.PENDING:
        try:
            await send_templated(engine, mailer, f"application_{status}", applicant["email"], {
                "username": applicant.get("username"),
                "community_name": community_name,
                "application_type": app["application_type_name"],
                "review_notes": app["review_notes"] or "",
            })
        except UpstreamError as exc:
            logger.warning("Application email to %s failed: %s", applicant["email"], exc)
    return app


def close_application(engine, app_id: int, *, actor_id: str | None) -> dict:
    with Session(engine, expire_on_commit=False) as session:
        app = session.get(Application, app_id)
        if app is None:
            raise NotFoundError("Application not found")
        if app.closed:
            raise ConflictError("Application is already closed")
        app.closed = True
        app.closed_at = utcnow()
        app.closed_by = actor_id
        log_action(
            session, actor_id=actor_id, action="close_application",
            resource_type="applications", resource_id=str(app_id),
        )
        session.commit()
        return application_to_dict(app)


def reopen_application(engine, app_id: int, *, actor_id: str | None) -> dict:
    """Clear the closed flag and send the application back to pending."""
    with Session(engine, expire_on_commit=False) as session:
        app = session.get(Application, app_id)
        if app is None:
            raise NotFoundError("Application not found")
        before = {"status": app.status, "closed": app.closed}
        app.closed = False
        app.closed_at = None
        app.closed_by = None
        app.status = ApplicationStatus.PENDING
        log_action(
            session, actor_id=actor_id, action="reopen_application",
            resource_type="applications", resource_id=str(app_id),
            before=before, after={"status": app.status, "closed": False},
        )
        session.commit()
        return application_to_dict(app)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------
def list_applications(
    engine,
    *,
    status: str | None = None,
    search: str | None = None,
    date_range: str | None = None,
    type_id: int | None = None,
    include_closed: bool = True,
) -> list[dict]:
    with Session(engine) as session:
        stmt = (
            select(Application, User)
            .join(User, User.id == Application.user_id)
            .order_by(Application.created_at.desc())
        )
        if status and status != "all":
            stmt = stmt.where(Application.status == status)
        if type_id:
            stmt = stmt.where(Application.application_type_id == type_id)
        if not include_closed:
            stmt = stmt.where(Application.closed.is_(False))
        if date_range in DATE_RANGES:
            stmt = stmt.where(
                Application.created_at >= utcnow() - timedelta(days=DATE_RANGES[date_range])
            )
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(or_(
                func.lower(Application.discord_name).like(pattern),
                func.lower(Application.steam_name).like(pattern),
                func.lower(Application.fivem_name).like(pattern),
                func.lower(User.username).like(pattern),
                func.lower(User.email).like(pattern),
            ))
        return [application_to_dict(app, user) for app, user in session.execute(stmt).all()]


def my_applications(engine, user_id: str) -> list[dict]:
    with Session(engine) as session:
        rows = session.scalars(
            select(Application)
            .where(Application.user_id == user_id)
            .order_by(Application.created_at.desc())
        ).all()
        return [application_to_dict(a) for a in rows]


def get_application(engine, app_id: int) -> dict:
    with Session(engine) as session:
        app = session.get(Application, app_id)
        if app is None:
            raise NotFoundError("Application not found")
        return application_to_dict(app, session.get(User, app.user_id))
