"""
Reporting API endpoints.

Endpoints:
    GET /api/reports/activity-status       - Activity counts by status/state/priority
    GET /api/reports/member-performance    - Task completion per member (admin/PM/PMO)
    GET /api/reports/activities.csv        - CSV export of activities (admin/PM/PMO)
    GET /api/reports/approval-aging        - Waiting time of pending review requests
"""

from __future__ import annotations

import logging
from collections import Counter

from flask import Blueprint, Response, g, jsonify
from sqlalchemy import select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..models import Activity, ApprovalRequest, Task, User, utcnow
from ..workflow import OVERSIGHT_ROLES, ReviewState, is_completed_status
from .common import csv_response
from .review import aging_summary

logger = logging.getLogger(__name__)

reports_bp = Blueprint("reports", __name__)

CSV_COLUMNS = (
    "ticket_number",
    "title",
    "project_name",
    "status",
    "approval_state",
    "priority",
    "start_date",
    "end_date",
    "created_by_name",
    "assignees",
    "created_at",
)


def _tenant_activities() -> list[Activity]:
    return db.session.scalars(
        select(Activity)
        .where(Activity.organization_id == g.organization_id)
        .order_by(Activity.created_at.desc(), Activity.id.desc())
    ).all()


@reports_bp.route("/activity-status", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def activity_status_report() -> tuple[Response, int]:
    activities = _tenant_activities()
    return (
        jsonify(
            {
                "total": len(activities),
                "by_status": dict(Counter(a.status for a in activities)),
                "by_approval_state": dict(Counter(a.approval_state for a in activities)),
                "by_priority": dict(Counter(a.priority for a in activities)),
            }
        ),
        200,
    )


@reports_bp.route("/member-performance", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def member_performance() -> tuple[Response, int]:
    """
    Per-member task statistics.

    ``completion_rate`` is the percentage of assigned tasks that are done,
    rounded to one decimal; members without tasks report 0.
    """
    users = db.session.scalars(
        select(User).where(User.organization_id == g.organization_id).order_by(User.name)
    ).all()
    tasks = db.session.scalars(
        select(Task).where(Task.organization_id == g.organization_id)
    ).all()

    now = utcnow()
    members = []
    for user in users:
        assigned = [task for task in tasks if task.assignee_id == user.id]
        completed = sum(1 for task in assigned if is_completed_status(task.status))
        overdue = sum(1 for task in assigned if task.is_overdue(now))
        members.append(
            {
                "user_id": user.id,
                "name": user.name,
                "email": user.email,
                "role": user.role,
                "assigned_tasks": len(assigned),
                "completed_tasks": completed,
                "overdue_tasks": overdue,
                "completion_rate": round(completed * 100 / len(assigned), 1) if assigned else 0,
            }
        )
    return jsonify({"members": members, "count": len(members)}), 200


@reports_bp.route("/activities.csv", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def export_activities() -> Response:
    rows = []
    for activity in _tenant_activities():
        row = activity.to_dict()
        row["assignees"] = "; ".join(user["name"] for user in row["assignees"])
        rows.append(row)

    record_audit(EntityType.REPORT, None, AuditAction.EXPORT, new_values={"rows": len(rows)})
    db.session.commit()
    logger.info("Activities exported for organization %s", g.organization_id)
    return csv_response(rows, CSV_COLUMNS, "activities.csv")


@reports_bp.route("/approval-aging", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def approval_aging() -> tuple[Response, int]:
    """Age of the tenant's pending review requests (see ``aging_summary``)."""
    pending = db.session.scalars(
        select(ApprovalRequest).where(
            ApprovalRequest.organization_id == g.organization_id,
            ApprovalRequest.state == ReviewState.PENDING.value,
        )
    ).all()
    return jsonify(aging_summary(pending)), 200
