"""
Audit log API endpoints.

Endpoints:
    GET /api/audit/logs                                - Filtered, paged audit log (admin)
    GET /api/audit/trail/<entity_type>/<entity_id>     - History of one item (admin/PM/PMO)
    GET /api/audit/user/<user_id>                      - Actions of one user (admin or self)
    GET /api/audit/security-events                     - Sign-ins, role and password changes (admin)
    GET /api/audit/my-activity                         - The caller's own actions
    GET /api/audit/stats                               - Counts by action, type and user (admin)

Entries are only ever written by ``tracker_app.audit.record_audit``; this
blueprint is read-only.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import select

from .. import db
from ..audit import SECURITY_ACTIONS, AuditAction, EntityType
from ..auth import require_auth, require_organization, require_roles
from ..models import AuditLog, utcnow
from ..workflow import OVERSIGHT_ROLES, UserRole
from .common import DEFAULT_PER_PAGE, MAX_PER_PAGE, json_error, parse_datetime, tenant_user

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__)

DEFAULT_SECURITY_DAYS = 7
DEFAULT_STATS_DAYS = 30


def _tenant_logs():
    return select(AuditLog).where(AuditLog.organization_id == g.organization_id)


def _apply_filters(stmt, args):
    """
    Narrow an audit query by ``entity_type``, ``action``, ``user_id``,
    ``date_from`` and ``date_to``.

    Raises:
        ValueError: For an unknown entity type or action, or a bad date.
    """
    entity_type = args.get("entity_type")
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == EntityType(entity_type).value)
    action = args.get("action")
    if action:
        stmt = stmt.where(AuditLog.action == AuditAction(action).value)
    user_id = args.get("user_id", type=int)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    date_from = parse_datetime(args.get("date_from"))
    if date_from is not None:
        stmt = stmt.where(AuditLog.created_at >= date_from)
    date_to = parse_datetime(args.get("date_to"))
    if date_to is not None:
        stmt = stmt.where(AuditLog.created_at <= date_to)
    return stmt


def _page(stmt) -> tuple[Response, int]:
    try:
        stmt = _apply_filters(stmt, request.args)
    except ValueError as exc:
        return json_error(str(exc), 400)

    entries = db.session.scalars(
        stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    ).all()
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    per_page = request.args.get("per_page", DEFAULT_PER_PAGE, type=int) or DEFAULT_PER_PAGE
    per_page = max(1, min(per_page, MAX_PER_PAGE))
    total = len(entries)
    page_items = entries[(page - 1) * per_page : page * per_page]
    return (
        jsonify(
            {
                "logs": [entry.to_dict() for entry in page_items],
                "count": len(page_items),
                "pagination": {
                    "page": page,
                    "per_page": per_page,
                    "total": total,
                    "pages": (total + per_page - 1) // per_page,
                },
            }
        ),
        200,
    )


def _days(default: int) -> int:
    days = request.args.get("days", default, type=int)
    return days if days and days > 0 else default


@audit_bp.route("/logs", methods=["GET"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def list_logs() -> tuple[Response, int]:
    return _page(_tenant_logs())


@audit_bp.route("/trail/<entity_type>/<int:entity_id>", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def entity_trail(entity_type: str, entity_id: int) -> tuple[Response, int]:
    """Every recorded action on one item, newest first."""
    try:
        entity_type = EntityType(entity_type).value
    except ValueError:
        return json_error(f"Unknown entity type '{entity_type}'", 400)
    return _page(
        _tenant_logs().where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
    )


@audit_bp.route("/user/<int:user_id>", methods=["GET"])
@require_auth
@require_organization
def user_logs(user_id: int) -> tuple[Response, int]:
    if user_id != g.user_id and g.role != UserRole.ADMIN.value:
        return json_error("Access denied", 403)
    if tenant_user(user_id) is None:
        return json_error("User not found", 404)
    return _page(_tenant_logs().where(AuditLog.user_id == user_id))


@audit_bp.route("/security-events", methods=["GET"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def security_events() -> tuple[Response, int]:
    """Security-relevant entries of the last ``days`` (default 7)."""
    since = utcnow() - timedelta(days=_days(DEFAULT_SECURITY_DAYS))
    return _page(
        _tenant_logs().where(
            AuditLog.action.in_(SECURITY_ACTIONS), AuditLog.created_at >= since
        )
    )


@audit_bp.route("/my-activity", methods=["GET"])
@require_auth
def my_activity() -> tuple[Response, int]:
    # Entries from before the caller joined a tenant are included.
    return _page(select(AuditLog).where(AuditLog.user_id == g.user_id))


@audit_bp.route("/stats", methods=["GET"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def audit_stats() -> tuple[Response, int]:
    days = _days(DEFAULT_STATS_DAYS)
    since = utcnow() - timedelta(days=days)
    entries = db.session.scalars(_tenant_logs().where(AuditLog.created_at >= since)).all()

    by_user: Counter = Counter()
    names: dict[int, str] = {}
    for entry in entries:
        if entry.user_id is not None:
            by_user[entry.user_id] += 1
            names[entry.user_id] = entry.user.name if entry.user else ""
    return (
        jsonify(
            {
                "days": days,
                "total": len(entries),
                "by_action": dict(Counter(entry.action for entry in entries)),
                "by_entity_type": dict(Counter(entry.entity_type for entry in entries)),
                "most_active_users": [
                    {"user_id": user_id, "name": names[user_id], "count": count}
                    for user_id, count in by_user.most_common(10)
                ],
                "failed_logins": sum(
                    1 for entry in entries if entry.action == AuditAction.LOGIN_FAILED.value
                ),
            }
        ),
        200,
    )
