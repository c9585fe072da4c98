"""
dreamlight.api.routes.staff — Security, staff roles, settings, users & logs
============================================================================
"""

from __future__ import annotations

import logging
import os
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from dreamlight.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_mailer,
    request_ip,
    require_admin,
    require_staff,
)
from dreamlight.api.rate_limit import rate_limited_staff
from dreamlight.config import PanelConfig
from dreamlight.database.engine import run_db
from dreamlight.errors import ValidationError
from dreamlight.services import (
    auth_service,
    permission_service,
    security_service,
    settings_service,
)
from dreamlight.services.log_buffer import (
    VALID_LEVELS,
    get_current_level,
    get_logs,
    set_capture_level,
)

router = APIRouter(prefix="/staff", tags=["staff"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SecurityRequest(BaseModel):
    action: str
    data: dict[str, Any] = Field(default_factory=dict)


class StaffRoleAction(BaseModel):
    action: Literal["promote", "demote", "change_role"]
    user_id: str
    new_role: str | None = None


class RoleBody(BaseModel):
    name: str | None = None
    display_name: str | None = None
    description: str | None = None
    color: str | None = None
    hierarchy_level: int | None = None
    is_active: bool | None = None
    permissions: list[str] | None = None


class RolePermissionsBody(BaseModel):
    permissions: list[str] = Field(default_factory=list)


class KillSwitchBody(BaseModel):
    active: bool


class SettingUpdate(BaseModel):
    key: str
    value: Any


class BanBody(BaseModel):
    banned: bool
    reason: str | None = None


class LogLevelBody(BaseModel):
    level: str


def _audit_limit(raw: Any) -> int:
    if raw in (None, ""):
        return 50
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("limit must be a whole number") from None
    if not 1 <= limit <= 500:
        raise ValidationError("limit must be between 1 and 500")
    return limit


# ---------------------------------------------------------------------------
# Security actions
# ---------------------------------------------------------------------------
@router.post("/security")
async def security_action(
    body: SecurityRequest,
    request: Request,
    staff: dict = Depends(require_staff),
    engine=Depends(get_engine),
):
    """``{action, data}`` dispatcher for the security dashboard."""
    data = body.data
    match body.action:
        case "log_audit_event":
            if not data.get("action") or not data.get("resource_type"):
                raise ValidationError("action and resource_type are required")
            await run_db(
                security_service.log_audit_event,
                engine,
                actor_id=staff["id"],
                action=data["action"],
                resource_type=data["resource_type"],
                resource_id=data.get("resource_id"),
                old_values=data.get("old_values"),
                new_values=data.get("new_values"),
                ip_address=request_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
            return {"success": True}
        case "get_audit_logs":
            return await run_db(
                security_service.get_audit_logs,
                engine,
                _audit_limit(data.get("limit")),
                resource_type=data.get("resource_type"),
                actor_id=data.get("actor_id"),
            )
        case "track_failed_login":
            return await run_db(
                security_service.track_failed_login,
                engine,
                data.get("ip_address"),
                data.get("email"),
            )
        case "check_rate_limit":
            return await run_db(
                security_service.check_rate_limit,
                engine,
                data.get("ip_address") or request_ip(request),
                data.get("limit_type", "application"),
            )
        case "cleanup_expired_sessions":
            deleted = await run_db(security_service.cleanup_expired_sessions, engine)
            return {"success": True, "deleted": deleted}
        case "get_security_stats":
            return await run_db(security_service.get_security_stats, engine)
        case _:
            raise ValidationError("Invalid action")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users")
async def list_users(
    search: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    staff: dict = Depends(require_staff),
    engine=Depends(get_engine),
):
    return await run_db(auth_service.list_users, engine, search=search, limit=limit)


@router.post("/users/{user_id}/force-logout")
async def force_logout(
    user_id: str,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    count = await run_db(auth_service.force_logout_user, engine, user_id, actor_id=admin["id"])
    return {"success": True, "sessions_deleted": count}


@router.post("/users/{user_id}/ban")
async def ban_user(
    user_id: str,
    body: BanBody,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
    cfg: PanelConfig = Depends(get_config),
    mailer=Depends(get_mailer),
):
    return await auth_service.ban_user(
        engine,
        mailer,
        user_id,
        banned=body.banned,
        reason=body.reason,
        actor_id=admin["id"],
        community_name=cfg.community_name,
    )


@router.post("/users/{user_id}/reset-password")
async def reset_user_password(
    user_id: str,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
    cfg: PanelConfig = Depends(get_config),
    mailer=Depends(get_mailer),
):
    """Email the user a reset link on their behalf."""
    return await auth_service.admin_reset_password(
        engine,
        mailer,
        user_id,
        actor_id=admin["id"],
        reset_base_url=os.getenv("FRONTEND_URL", "").strip(),
        community_name=cfg.community_name,
    )


# ---------------------------------------------------------------------------
# Staff ranks & staff roles
# ---------------------------------------------------------------------------
@router.get("/members")
async def list_staff(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(permission_service.list_staff, engine)


@router.post("/members")
async def manage_staff(
    body: StaffRoleAction,
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(
        permission_service.manage_staff_role,
        engine,
        action=body.action,
        user_id=body.user_id,
        new_role=body.new_role,
        actor=staff,
    )


@router.get("/roles")
async def list_roles(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(permission_service.list_roles, engine)


@router.get("/permissions")
async def list_permissions(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return await run_db(permission_service.list_permissions, engine)


@router.get("/me/permissions")
async def my_permissions(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return {
        "roles": await run_db(permission_service.get_user_roles, engine, user["id"]),
        "permissions": sorted(
            await run_db(permission_service.get_user_permissions, engine, user["id"])
        ),
    }


@router.post("/roles", status_code=201)
async def create_role(
    body: RoleBody,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(
        permission_service.create_role, engine, body.model_dump(exclude_none=True), actor_id=admin["id"],
    )


@router.put("/roles/{role_id}")
async def update_role(
    role_id: int,
    body: RoleBody,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(
        permission_service.update_role,
        engine,
        role_id,
        body.model_dump(exclude_none=True),
        actor_id=admin["id"],
    )


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: int,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    await run_db(permission_service.delete_role, engine, role_id, actor_id=admin["id"])
    return {"success": True}


@router.put("/roles/{role_id}/permissions")
async def set_role_permissions(
    role_id: int,
    body: RolePermissionsBody,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    names = await run_db(
        permission_service.set_role_permissions, engine, role_id, body.permissions, actor_id=admin["id"],
    )
    return {"role_id": role_id, "permissions": names}


@router.post("/roles/{role_id}/members/{user_id}")
async def assign_role(
    role_id: int,
    user_id: str,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    return await run_db(permission_service.assign_role, engine, user_id, role_id, actor_id=admin["id"])


@router.delete("/roles/{role_id}/members/{user_id}")
async def revoke_role(
    role_id: int,
    user_id: str,
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    await run_db(permission_service.revoke_role, engine, user_id, role_id, actor_id=admin["id"])
    return {"success": True}


# ---------------------------------------------------------------------------
# Kill switch
# ---------------------------------------------------------------------------
@router.get("/kill-switch")
async def kill_switch_status(
    user: dict = Depends(get_current_user),
    cfg: PanelConfig = Depends(get_config),
    engine=Depends(get_engine),
):
    return await run_db(
        settings_service.kill_switch_status, engine, user, cfg.kill_switch_owner_email,
    )


@router.post("/kill-switch")
async def toggle_kill_switch(
    body: KillSwitchBody,
    user: dict = Depends(get_current_user),
    cfg: PanelConfig = Depends(get_config),
    engine=Depends(get_engine),
):
    return await run_db(
        settings_service.toggle_kill_switch, engine, user, cfg.kill_switch_owner_email, body.active,
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.get("/settings")
async def get_settings(staff: dict = Depends(require_staff), engine=Depends(get_engine)):
    return {"settings": await run_db(settings_service.get_all_settings, engine)}


@router.put("/settings")
async def update_settings(
    body: list[SettingUpdate],
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    count = await run_db(
        settings_service.bulk_upsert,
        engine,
        [item.model_dump() for item in body],
        actor_id=admin["id"],
    )
    return {"success": True, "updated": count}


@router.patch("/settings/{key}")
async def merge_setting(
    key: str,
    patch: dict[str, Any],
    admin: dict = Depends(require_admin),
    staff: dict = Depends(rate_limited_staff),
    engine=Depends(get_engine),
):
    value = await run_db(settings_service.merge_setting, engine, key=key, patch=patch, actor_id=admin["id"])
    return {"key": key, "value": value}


# ---------------------------------------------------------------------------
# Logs viewer
# ---------------------------------------------------------------------------
@router.get("/logs")
def read_logs(
    tail: int = Query(200, ge=1, le=2000),
    level: str | None = Query(None),
    prefix: str | None = Query(None),
    search: str | None = Query(None),
    admin: dict = Depends(require_admin),
):
    return {
        "entries": get_logs(tail=tail, level=level, prefix=prefix, search=search),
        "capture_level": get_current_level(),
        "valid_levels": list(VALID_LEVELS),
    }


@router.put("/logs/level")
def update_log_level(body: LogLevelBody, admin: dict = Depends(require_admin)):
    level = set_capture_level(body.level)
    logger.info("Log capture level set to %s by %s", level, admin.get("email"))
    return {"capture_level": level}
