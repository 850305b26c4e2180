"""
Activity API endpoints.

Endpoints:
    GET    /api/activities                   - List activities
    POST   /api/activities                   - Create a draft activity
    GET    /api/activities/<id>              - Retrieve an activity
    PATCH  /api/activities/<id>              - Update an activity
    DELETE /api/activities/<id>              - Delete an activity
    POST   /api/activities/<id>/submit       - Submit for approval
    POST   /api/activities/<id>/approve      - Approve (admin/PM)
    POST   /api/activities/<id>/reject       - Reject with a comment (admin/PM)
    POST   /api/activities/<id>/reopen       - Reopen (admin/PM)
    POST   /api/activities/<id>/close        - Close (admin/PM)
    GET    /api/activities/<id>/comments     - List comments
    POST   /api/activities/<id>/comments     - Add a comment

Key Concepts Demonstrated:
- Approval lifecycle shared with the approvals API through ``review``
- Edit rights that depend on both role and lifecycle state
- Many-to-many assignees
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import or_, select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization
from ..models import Activity, Comment, Project, Task, User, activity_assignees
from ..workflow import (
    EDITABLE_APPROVAL_STATES,
    MANAGER_ROLES,
    TODO,
    ActivityPriority,
    ApprovalState,
    ReviewState,
    ReviewSubject,
    StatusType,
    UserRole,
    WorkflowError,
    activity_priority_from,
    generate_ticket_number,
    is_valid_transition,
    normalize_task_status,
)
from .common import (
    can_view_activity,
    close_review,
    ensure_utc,
    get_json_body,
    has_oversight,
    is_manager,
    is_project_member,
    json_error,
    parse_datetime,
    resolve_status,
    tenant_get,
    validate_required_fields,
)
from .review import apply_activity_action

logger = logging.getLogger(__name__)

activities_bp = Blueprint("activities", __name__)


# =====================================================================
# Helper Functions
# =====================================================================


def _can_edit(activity: Activity) -> bool:
    if is_manager():
        return True
    return (
        activity.created_by_id == g.user_id
        and activity.approval_state in EDITABLE_APPROVAL_STATES
    )


def _load(activity_id: int):
    activity = tenant_get(Activity, activity_id)
    if activity is None:
        return None, json_error("Activity not found", 404)
    if not can_view_activity(activity, g.current_user):
        return None, json_error("Access denied", 403)
    return activity, None


def _resolve_assignees(value: Any) -> tuple[list[User] | None, str | None]:
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in value
    ):
        return None, "assignee_ids must be a list of user ids"
    if not value:
        return [], None
    users = db.session.scalars(
        select(User).where(
            User.id.in_(value), User.organization_id == g.organization_id
        )
    ).all()
    if len(users) != len(set(value)):
        return None, "assignee_ids must reference users of your organization"
    return list(users), None


def _apply_fields(activity: Activity, data: dict[str, Any]) -> str | None:
    """Validate and apply editable fields; returns an error message or ``None``."""
    if "title" in data:
        title = data["title"]
        if not isinstance(title, str) or not title.strip():
            return "'title' is required"
        if len(title) > 200:
            return "Title must be 200 characters or less"
    try:
        start_date = (
            parse_datetime(data["start_date"]) if "start_date" in data else activity.start_date
        )
        end_date = parse_datetime(data["end_date"]) if "end_date" in data else activity.end_date
        priority = (
            activity_priority_from(data["priority"]).value if "priority" in data else None
        )
    except ValueError as exc:
        return str(exc)
    if start_date and end_date and ensure_utc(end_date) < ensure_utc(start_date):
        return "end_date must not be before start_date"

    status = None
    if "status" in data:
        status, error = resolve_status(data["status"], StatusType.ACTIVITY.value)
        if error:
            return error
        if (
            activity.status
            and not is_manager()
            and not is_valid_transition(StatusType.ACTIVITY.value, activity.status, status)
        ):
            return f"Invalid status transition from '{activity.status}' to '{status}'"

    assignees = None
    if "assignee_ids" in data:
        assignees, error = _resolve_assignees(data["assignee_ids"])
        if error:
            return error

    if "tags" in data and (
        not isinstance(data["tags"], list)
        or not all(isinstance(tag, str) for tag in data["tags"])
    ):
        return "tags must be a list of strings"

    if "title" in data:
        activity.title = data["title"].strip()
    if "description" in data:
        activity.description = data["description"]
    activity.start_date = start_date
    activity.end_date = end_date
    if priority is not None:
        activity.priority = priority
    if status is not None:
        activity.status = status
    if assignees is not None:
        activity.assignees = assignees
    if "tags" in data:
        activity.tags = list(data["tags"])
    return None


def _transition(
    activity: Activity, action: str, comment: str | None = None
) -> tuple[Response, int]:
    try:
        apply_activity_action(activity, action, comment)
    except WorkflowError as exc:
        return json_error(str(exc), 409)
    db.session.commit()
    return jsonify({"activity": activity.to_dict()}), 200


# =====================================================================
# CRUD Endpoints
# =====================================================================


@activities_bp.route("", methods=["GET"])
@require_auth
@require_organization
def list_activities() -> tuple[Response, int]:
    """
    List tenant activities; members only see activities they created or
    are assigned to.
    """
    stmt = select(Activity).where(Activity.organization_id == g.organization_id)
    if not has_oversight():
        assigned = select(activity_assignees.c.activity_id).where(
            activity_assignees.c.user_id == g.user_id
        )
        stmt = stmt.where(
            or_(Activity.created_by_id == g.user_id, Activity.id.in_(assigned))
        )

    status = request.args.get("status")
    if status:
        try:
            status = normalize_task_status(status)
        except ValueError as exc:
            return json_error(str(exc), 400)
        stmt = stmt.where(Activity.status == status)
    approval_state = request.args.get("approval_state")
    if approval_state:
        stmt = stmt.where(Activity.approval_state == approval_state)
    project_id = request.args.get("project_id", type=int)
    if project_id is not None:
        stmt = stmt.where(Activity.project_id == project_id)
    assignee_id = request.args.get("assignee_id", type=int)
    if assignee_id is not None:
        stmt = stmt.where(
            Activity.id.in_(
                select(activity_assignees.c.activity_id).where(
                    activity_assignees.c.user_id == assignee_id
                )
            )
        )

    activities = db.session.scalars(
        stmt.order_by(Activity.created_at.desc(), Activity.id.desc())
    ).all()
    return (
        jsonify(
            {"activities": [a.to_dict() for a in activities], "count": len(activities)}
        ),
        200,
    )


@activities_bp.route("", methods=["POST"])
@require_auth
@require_organization
def create_activity() -> tuple[Response, int]:
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["title"])
    if missing:
        return json_error(missing, 400)
    project = tenant_get(Project, data.get("project_id")) if isinstance(
        data.get("project_id"), int
    ) else None
    if project is None:
        return json_error("'project_id' must reference a project of your organization", 400)
    if not is_manager() and not is_project_member(project.id, g.user_id):
        return json_error("You are not a member of this project", 403)

    activity = Activity(
        ticket_number=generate_ticket_number(),
        title=data["title"].strip(),
        status=TODO,
        approval_state=ApprovalState.DRAFT.value,
        priority=ActivityPriority.MEDIUM.value,
        tags=[],
        project_id=project.id,
        organization_id=g.organization_id,
        created_by_id=g.user_id,
    )
    fields = {key: value for key, value in data.items() if key != "status"}
    if "status" in data:
        status, error = resolve_status(data["status"], StatusType.ACTIVITY.value)
        if error:
            return json_error(error, 400)
        activity.status = status
    error = _apply_fields(activity, fields)
    if error:
        return json_error(error, 400)

    db.session.add(activity)
    db.session.flush()
    record_audit(
        EntityType.ACTIVITY, activity.id, AuditAction.CREATE,
        new_values={"title": activity.title},
    )
    db.session.commit()
    logger.info("Activity %s created by user_id=%s", activity.ticket_number, g.user_id)
    return jsonify({"activity": activity.to_dict()}), 201


@activities_bp.route("/<int:activity_id>", methods=["GET"])
@require_auth
@require_organization
def get_activity(activity_id: int) -> tuple[Response, int]:
    activity, error = _load(activity_id)
    if error:
        return error
    data = activity.to_dict()
    data["comments"] = [comment.to_dict() for comment in activity.comments]
    return jsonify({"activity": data}), 200


@activities_bp.route("/<int:activity_id>", methods=["PATCH", "PUT"])
@require_auth
@require_organization
def update_activity(activity_id: int) -> tuple[Response, int]:
    """
    Admins and project managers may always edit; the creator only while
    the activity is a draft or reopened.
    """
    activity, error = _load(activity_id)
    if error:
        return error
    if not _can_edit(activity):
        return json_error("You do not have permission to edit this activity", 403)
    data = get_json_body()
    if not data:
        return json_error("Request body must be JSON", 400)

    message = _apply_fields(activity, data)
    if message:
        return json_error(message, 400)
    activity.updated_by_id = g.user_id
    db.session.commit()
    return jsonify({"activity": activity.to_dict()}), 200


@activities_bp.route("/<int:activity_id>", methods=["DELETE"])
@require_auth
@require_organization
def delete_activity(activity_id: int) -> tuple[Response, int]:
    activity, error = _load(activity_id)
    if error:
        return error
    allowed = g.role == UserRole.ADMIN.value or (
        activity.created_by_id == g.user_id
        and activity.approval_state == ApprovalState.DRAFT.value
    )
    if not allowed:
        return json_error("You do not have permission to delete this activity", 403)

    for task in db.session.scalars(select(Task).where(Task.activity_id == activity.id)):
        task.activity_id = None
    db.session.delete(activity)
    close_review(ReviewSubject.ACTIVITY, activity.id, ReviewState.REVOKED)
    record_audit(
        EntityType.ACTIVITY, activity_id, AuditAction.DELETE,
        old_values={"title": activity.title},
    )
    db.session.commit()
    logger.info("Activity %s deleted by user_id=%s", activity_id, g.user_id)
    return jsonify({"message": "Activity deleted successfully"}), 200


# =====================================================================
# Approval Workflow
# =====================================================================


@activities_bp.route("/<int:activity_id>/submit", methods=["POST"])
@require_auth
@require_organization
def submit_activity(activity_id: int) -> tuple[Response, int]:
    activity, error = _load(activity_id)
    if error:
        return error
    if not is_manager() and activity.created_by_id != g.user_id and (
        g.user_id not in activity.assignee_ids
    ):
        return json_error("You do not have permission to submit this activity", 403)
    return _transition(activity, "submit")


def _review(activity_id: int, action: str) -> tuple[Response, int]:
    activity, error = _load(activity_id)
    if error:
        return error
    if g.role not in MANAGER_ROLES:
        return json_error("Insufficient permissions", 403)
    return _transition(activity, action)


@activities_bp.route("/<int:activity_id>/approve", methods=["POST"])
@require_auth
@require_organization
def approve_activity(activity_id: int) -> tuple[Response, int]:
    return _review(activity_id, "approve")


@activities_bp.route("/<int:activity_id>/reject", methods=["POST"])
@require_auth
@require_organization
def reject_activity(activity_id: int) -> tuple[Response, int]:
    """Reject a submitted activity; the mandatory ``comment`` is stored."""
    activity, error = _load(activity_id)
    if error:
        return error
    if g.role not in MANAGER_ROLES:
        return json_error("Insufficient permissions", 403)

    data = get_json_body() or {}
    comment = data.get("comment")
    if not isinstance(comment, str) or not comment.strip():
        return json_error("A comment is required when rejecting", 400)
    return _transition(activity, "reject", comment.strip())


@activities_bp.route("/<int:activity_id>/reopen", methods=["POST"])
@require_auth
@require_organization
def reopen_activity(activity_id: int) -> tuple[Response, int]:
    return _review(activity_id, "reopen")


@activities_bp.route("/<int:activity_id>/close", methods=["POST"])
@require_auth
@require_organization
def close_activity(activity_id: int) -> tuple[Response, int]:
    return _review(activity_id, "close")


# =====================================================================
# Comments
# =====================================================================


@activities_bp.route("/<int:activity_id>/comments", methods=["GET"])
@require_auth
@require_organization
def list_comments(activity_id: int) -> tuple[Response, int]:
    activity, error = _load(activity_id)
    if error:
        return error
    comments = [comment.to_dict() for comment in activity.comments]
    return jsonify({"comments": comments, "count": len(comments)}), 200


@activities_bp.route("/<int:activity_id>/comments", methods=["POST"])
@require_auth
@require_organization
def add_comment(activity_id: int) -> tuple[Response, int]:
    activity, error = _load(activity_id)
    if error:
        return error
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["body"])
    if missing:
        return json_error(missing, 400)
    comment = Comment(activity_id=activity.id, author_id=g.user_id, body=data["body"].strip())
    db.session.add(comment)
    db.session.commit()
    return jsonify({"comment": comment.to_dict()}), 201
