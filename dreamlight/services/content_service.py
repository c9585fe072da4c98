"""
dreamlight.services.content_service — Site Content Managers
============================================================

One registry drives every ``{action, data, id}`` manager the dashboard
uses for public site content: rules, partners, team members, supporter
packages, Twitch streamers, canned chat responses and email templates.

Every mutation goes through the audited helpers, so each change leaves an
``audit_logs`` row with before/after snapshots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dreamlight.database.engine import run_db
from dreamlight.database.models import (
    CannedResponse,
    EmailTemplate,
    Package,
    Partner,
    Rule,
    StaffRole,
    TeamMember,
    TwitchStreamer,
)
from dreamlight.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from dreamlight.services import discord_service, permission_service
from dreamlight.services.audit_service import (
    IMMUTABLE_KEYS,
    audited_create,
    audited_delete,
    audited_update,
    log_action,
    row_to_dict,
)

logger = logging.getLogger(__name__)

ACTIONS = ("create", "update", "delete", "fetch")
PACKAGE_INTERVALS = ("day", "week", "month", "year")


# ---------------------------------------------------------------------------
# Permission gates
# ---------------------------------------------------------------------------
def _rank_gate(*roles: str) -> Callable[[Any, dict], bool]:
    def gate(engine, user: dict) -> bool:
        return user.get("role") in roles

    return gate


def _package_gate(engine, user: dict) -> bool:
    if user.get("role") in ("admin", "staff"):
        return True
    return any(
        permission_service.has_permission(engine, user, name)
        for name in ("subscription.manage", "server.manage")
    )


# ---------------------------------------------------------------------------
# Per-entity data hooks
# ---------------------------------------------------------------------------
def _resolve_staff_role(engine, data: dict) -> dict:
    """Copy the staff role's display name into ``role``."""
    role_id = data.get("staff_role_id")
    if not role_id:
        return data
    with Session(engine) as session:
        role = session.get(StaffRole, int(role_id))
        if role is None:
            raise ValidationError("Invalid staff role")
        return {**data, "staff_role_id": role.id, "role": role.display_name}


def _require_staff_role(engine, data: dict) -> dict:
    if not data.get("staff_role_id"):
        raise ValidationError("Invalid staff role")
    return _resolve_staff_role(engine, data)


def _validate_package(engine, data: dict, *, partial: bool = False) -> dict:
    if "price_amount" in data or not partial:
        try:
            price = int(data.get("price_amount") or 0)
        except (TypeError, ValueError):
            raise ValidationError("price_amount must be an integer in minor units") from None
        if price <= 0:
            raise ValidationError("price_amount must be greater than 0")
        data = {**data, "price_amount": price}
    if "interval" in data or not partial:
        if data.get("interval", "month") not in PACKAGE_INTERVALS:
            raise ValidationError(
                f"interval must be one of: {', '.join(PACKAGE_INTERVALS)}"
            )
    if "currency" in data:
        data = {**data, "currency": str(data["currency"]).lower()}
    return data


def _validate_package_update(engine, data: dict) -> dict:
    return _validate_package(engine, data, partial=True)


def _lowercase_username(engine, data: dict) -> dict:
    if "username" in data:
        username = (data.get("username") or "").strip().lower()
        if not username:
            raise ValidationError("Twitch username is required")
        data = {**data, "username": username}
    return data


@dataclass(frozen=True, slots=True)
class ContentManager:
    """How one content table is listed, validated and guarded."""

    model: type
    resource_type: str
    order_by: tuple[str, ...]
    gate: Callable[[Any, dict], bool]
    on_create: Callable[[Any, dict], dict] | None = None
    on_update: Callable[[Any, dict], dict] | None = None
    has_created_by: bool = True
    required: tuple[str, ...] = field(default_factory=tuple)


MANAGERS: dict[str, ContentManager] = {
    "rules": ContentManager(
        model=Rule,
        resource_type="rules",
        order_by=("category", "order_index"),
        gate=_rank_gate("admin", "staff", "moderator"),
        required=("title",),
    ),
    "partners": ContentManager(
        model=Partner,
        resource_type="partners",
        order_by=("order_index",),
        gate=_rank_gate("admin", "staff"),
        required=("name",),
    ),
    "team_members": ContentManager(
        model=TeamMember,
        resource_type="team_members",
        order_by=("order_index",),
        gate=_rank_gate("admin", "staff"),
        on_create=_require_staff_role,
        on_update=_resolve_staff_role,
        has_created_by=False,
        required=("name",),
    ),
    "packages": ContentManager(
        model=Package,
        resource_type="packages",
        order_by=("order_index",),
        gate=_package_gate,
        on_create=_validate_package,
        on_update=_validate_package_update,
        required=("name",),
    ),
    "twitch_streamers": ContentManager(
        model=TwitchStreamer,
        resource_type="twitch_streamers",
        order_by=("order_index",),
        gate=_rank_gate("admin", "staff"),
        on_create=_lowercase_username,
        on_update=_lowercase_username,
        required=("username",),
    ),
    "canned_responses": ContentManager(
        model=CannedResponse,
        resource_type="canned_responses",
        order_by=("category", "order_index"),
        gate=_rank_gate("admin", "staff", "moderator"),
        required=("title", "message"),
    ),
}

PUBLIC_ENTITIES = ("rules", "partners", "team_members", "packages", "twitch_streamers")


def get_manager(entity: str) -> ContentManager:
    try:
        return MANAGERS[entity]
    except KeyError:
        raise NotFoundError(f"Unknown content type: {entity}") from None


def _columns(model: type) -> set[str]:
    return {c.key for c in model.__table__.columns}


def _clean(model: type, data: dict) -> dict:
    cols = _columns(model)
    return {k: v for k, v in data.items() if k in cols and k not in IMMUTABLE_KEYS}


def _ordered(manager: ContentManager):
    return [getattr(manager.model, col) for col in manager.order_by] + [manager.model.id]


# ---------------------------------------------------------------------------
# Manager entry point
# ---------------------------------------------------------------------------
def manage_content(
    engine,
    entity: str,
    action: str,
    user: dict,
    *,
    data: dict | None = None,
    item_id: int | None = None,
) -> dict:
    """Run one ``{action, data, id}`` request against *entity*."""
    manager = get_manager(entity)
    if action not in ACTIONS:
        raise ValidationError("Invalid action")
    if not manager.gate(engine, user):
        raise ForbiddenError("Insufficient permissions")

    data = dict(data or {})
    if action == "fetch":
        return {"items": list_items(engine, entity)}

    if action == "create":
        for key in manager.required:
            if not str(data.get(key) or "").strip():
                raise ValidationError(f"{key} is required")
        if manager.on_create:
            data = manager.on_create(engine, data)
        fields = _clean(manager.model, data)
        if manager.has_created_by:
            fields["created_by"] = user.get("id")
        try:
            row = audited_create(
                engine, manager.model(**fields),
                resource_type=manager.resource_type, actor_id=user.get("id"),
            )
        except IntegrityError:
            raise ConflictError(f"That {entity} entry already exists") from None
        logger.info("%s created %s #%s", user.get("email"), entity, row.id)
        return {"success": True, "item": row_to_dict(row)}

    if item_id is None:
        raise ValidationError("id is required")

    if action == "update":
        if manager.on_update:
            data = manager.on_update(engine, data)
        try:
            row = audited_update(
                engine, manager.model, item_id,
                resource_type=manager.resource_type, actor_id=user.get("id"),
                **_clean(manager.model, data),
            )
        except IntegrityError:
            raise ConflictError(f"That {entity} entry already exists") from None
        if row is None:
            raise NotFoundError("Item not found")
        return {"success": True, "item": row_to_dict(row)}

    with Session(engine) as session:
        existing = row_to_dict(session.get(manager.model, item_id))
    if existing is None:
        raise NotFoundError("Item not found")
    audited_delete(
        engine, manager.model, item_id,
        resource_type=manager.resource_type, actor_id=user.get("id"),
    )
    return {"success": True, "item": existing}


async def manage_rules(
    engine,
    action: str,
    user: dict,
    *,
    data: dict | None = None,
    item_id: int | None = None,
) -> dict:
    """Rule manager plus the ``rule_change`` Discord log."""
    result = await run_db(
        manage_content, engine, "rules", action, user, data=data, item_id=item_id,
    )
    if action in ("create", "update", "delete"):
        await discord_service.send_log_quietly(engine, "rule_change", {
            "action": f"rule_{action}d",
            "admin": user.get("username") or user.get("email"),
            "rule": result["item"],
        })
    return result


def list_items(engine, entity: str, *, active_only: bool = False) -> list[dict]:
    manager = get_manager(entity)
    with Session(engine) as session:
        stmt = select(manager.model).order_by(*_ordered(manager))
        if active_only:
            stmt = stmt.where(manager.model.is_active.is_(True))
        return [row_to_dict(r) for r in session.scalars(stmt).all()]


def public_items(engine, entity: str) -> list[dict]:
    """Active rows for the public site."""
    if entity not in PUBLIC_ENTITIES:
        raise NotFoundError(f"Unknown content type: {entity}")
    return list_items(engine, entity, active_only=True)


# ---------------------------------------------------------------------------
# Email templates (admin only, keyed by template_type)
# ---------------------------------------------------------------------------
def list_email_templates(engine, user: dict) -> list[dict]:
    if user.get("role") != "admin":
        raise ForbiddenError("Admin access required")
    with Session(engine) as session:
        rows = session.scalars(select(EmailTemplate).order_by(EmailTemplate.template_type)).all()
        return [row_to_dict(r) for r in rows]


def upsert_email_template(engine, user: dict, data: dict) -> dict:
    if user.get("role") != "admin":
        raise ForbiddenError("Admin access required")
    template_type = (data.get("template_type") or "").strip()
    if not template_type:
        raise ValidationError("template_type is required")
    if not data.get("subject") or not data.get("body"):
        raise ValidationError("subject and body are required")

    with Session(engine, expire_on_commit=False) as session:
        row = session.scalars(
            select(EmailTemplate).where(EmailTemplate.template_type == template_type)
        ).first()
        before = row_to_dict(row)
        if row is None:
            row = EmailTemplate(template_type=template_type, created_by=user.get("id"))
            session.add(row)
        row.subject = data["subject"]
        row.body = data["body"]
        row.is_active = bool(data.get("is_active", True))
        session.flush()
        log_action(
            session,
            actor_id=user.get("id"),
            action="update" if before else "create",
            resource_type="email_templates",
            resource_id=str(row.id),
            before=before,
            after=row_to_dict(row),
        )
        session.commit()
        return row_to_dict(row)


def delete_email_template(engine, user: dict, template_id: int) -> None:
    if user.get("role") != "admin":
        raise ForbiddenError("Admin access required")
    if not audited_delete(
        engine, EmailTemplate, template_id, resource_type="email_templates", actor_id=user.get("id"),
    ):
        raise NotFoundError("Email template not found")
