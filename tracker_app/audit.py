"""
Audit Log Recording.

``record_audit`` adds an ``AuditLog`` row to the current session; it is
committed together with the change it describes, so a rolled-back request
leaves no audit entry behind.  The acting user, tenant, client address and
user agent are taken from the request when one is active.

Key Concepts Demonstrated:
- One vocabulary of audited entities and actions shared by all blueprints
- Audit rows that ride on the caller's transaction
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import delete

from . import db
from .models import AuditLog, utcnow

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    ORGANIZATION = "organization"
    USER = "user"
    PROJECT = "project"
    BOARD = "board"
    TASK = "task"
    ACTIVITY = "activity"
    COMMENT = "comment"
    APPROVAL = "approval"
    REPORT = "report"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    REASSIGN = "reassign"
    EXPORT = "export"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    ROLE_CHANGE = "role_change"
    INVITE_USER = "invite_user"


# Actions listed by the security-events endpoint.
SECURITY_ACTIONS = (
    AuditAction.LOGIN.value,
    AuditAction.LOGIN_FAILED.value,
    AuditAction.LOGOUT.value,
    AuditAction.PASSWORD_CHANGE.value,
    AuditAction.ROLE_CHANGE.value,
    AuditAction.INVITE_USER.value,
    AuditAction.DELETE.value,
)

DEFAULT_RETENTION_DAYS = 90


def record_audit(
    entity_type: EntityType,
    entity_id: int | None,
    action: AuditAction,
    *,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    user_id: int | None = None,
    organization_id: int | None = None,
) -> AuditLog:
    """
    Stage an audit entry in the current session.

    ``user_id`` and ``organization_id`` default to the authenticated
    caller (``g.user_id`` / ``g.organization_id``).
    """
    ip_address = user_agent = None
    if has_request_context():
        if user_id is None:
            user_id = g.get("user_id")
        if organization_id is None:
            organization_id = g.get("organization_id")
        ip_address = request.remote_addr
        user_agent = request.headers.get("User-Agent", "")[:255] or None

    entry = AuditLog(
        organization_id=organization_id,
        user_id=user_id,
        entity_type=EntityType(entity_type).value,
        entity_id=entity_id,
        action=AuditAction(action).value,
        old_values=old_values,
        new_values=new_values,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    return entry


def purge_audit_logs(retention_days: int = DEFAULT_RETENTION_DAYS, now: datetime | None = None) -> int:
    """Delete entries older than *retention_days*; returns how many were removed."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = db.session.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
    logger.info("Purged %s audit entries older than %s", result.rowcount, cutoff.isoformat())
    return result.rowcount or 0
