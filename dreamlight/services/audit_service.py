"""
dreamlight.services.audit_service — Audited Mutation Helpers
=============================================================

Shared helpers for every staff mutation.  Each write follows the pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write audit_logs row with before/after JSON
  5. Commit
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from dreamlight.database.models import AuditLog

logger = logging.getLogger(__name__)

IMMUTABLE_KEYS: tuple[str, ...] = ("id", "created_at", "updated_at", "created_by")


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for attr in inspect(obj).mapper.column_attrs:
        val = getattr(obj, attr.key)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[attr.columns[0].name] = val
    return result


def log_action(
    session: Session,
    *,
    actor_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None,
    before: dict | None = None,
    after: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """Insert a row into audit_logs within the current transaction."""
    entry = AuditLog(
        user_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        old_values=before,
        new_values=after,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(entry)
    return entry


def audited_create(
    engine,
    row: Any,
    *,
    resource_type: str,
    actor_id: str | None,
    ip_address: str | None = None,
) -> Any:
    """Generic audited CREATE: add -> flush -> log -> commit -> return.

    *row* is an ORM instance that has not been added to a session yet.
    """
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        session.flush()
        log_action(
            session,
            actor_id=actor_id,
            action="create",
            resource_type=resource_type,
            resource_id=str(row.id),
            after=row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        session.expunge(row)
        return row


def audited_update(
    engine,
    model_cls: type,
    pk: Any,
    *,
    resource_type: str,
    actor_id: str | None,
    frozen_keys: tuple[str, ...] = IMMUTABLE_KEYS,
    ip_address: str | None = None,
    **kwargs: Any,
) -> Any | None:
    """Generic audited UPDATE: get -> before -> apply kwargs -> log -> commit.

    Keys in *frozen_keys* and keys the model doesn't have are ignored.
    Returns the updated (expunged) object, or ``None`` if not found.
    """
    with Session(engine, expire_on_commit=False) as session:
        obj = session.get(model_cls, pk)
        if obj is None:
            return None
        before = row_to_dict(obj)
        for key, value in kwargs.items():
            if hasattr(obj, key) and key not in frozen_keys:
                setattr(obj, key, value)
        session.flush()
        log_action(
            session,
            actor_id=actor_id,
            action="update",
            resource_type=resource_type,
            resource_id=str(pk),
            before=before,
            after=row_to_dict(obj),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(obj)
        session.expunge(obj)
        return obj


def audited_delete(
    engine,
    model_cls: type,
    pk: Any,
    *,
    resource_type: str,
    actor_id: str | None,
    ip_address: str | None = None,
) -> bool:
    """Generic audited DELETE.  Returns ``True`` if the row existed."""
    with Session(engine) as session:
        obj = session.get(model_cls, pk)
        if obj is None:
            return False
        log_action(
            session,
            actor_id=actor_id,
            action="delete",
            resource_type=resource_type,
            resource_id=str(pk),
            before=row_to_dict(obj),
            ip_address=ip_address,
        )
        session.delete(obj)
        session.commit()
        return True
