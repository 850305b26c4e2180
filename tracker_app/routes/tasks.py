"""
Task API endpoints.

Endpoints:
    GET    /api/tasks                   - All tenant tasks (admin/PM/PMO)
    GET    /api/tasks/my                - Tasks assigned to the caller
    POST   /api/tasks/bulk-update       - Update several tasks at once
    GET    /api/tasks/<id>              - Retrieve a task
    PUT    /api/tasks/<id>              - Update a task (tracked in history)
    PATCH  /api/tasks/<id>              - Same as PUT
    DELETE /api/tasks/<id>              - Delete a task and its files
    PATCH  /api/tasks/<id>/status       - Workflow status change
    PATCH  /api/tasks/<id>/start        - Assignee starts a To Do task
    POST   /api/tasks/<id>/approve      - Approve a task (admin/PM)
    POST   /api/tasks/<id>/reject       - Reject a task (admin/PM)
    GET    /api/tasks/<id>/history      - Audit trail

Key Concepts Demonstrated:
- Status normalisation and transition checks from ``workflow``
- Field-level change tracking into ``TaskHistory``
- Tenant isolation (404) versus ownership checks (403)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, current_app, g, jsonify, request
from sqlalchemy import select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..models import Activity, Task, TaskHistory
from ..workflow import (
    DONE,
    IN_PROGRESS,
    MANAGER_ROLES,
    OVERSIGHT_ROLES,
    TODO,
    ChangeType,
    ReviewState,
    ReviewSubject,
    StatusType,
)
from .common import (
    apply_task_changes,
    apply_task_filters,
    apply_task_sort,
    can_edit_task,
    can_view_task,
    change_type_for,
    check_task_status,
    close_review,
    create_linked_activity,
    get_json_body,
    is_manager,
    json_error,
    record_history,
    remove_stored_files,
    resolve_status,
    set_task_status,
    task_list_response,
    tenant_get,
    validate_task_data,
)
from .review import send_back_task, sign_off_task

logger = logging.getLogger(__name__)

tasks_bp = Blueprint("tasks", __name__)


# =====================================================================
# Helper Functions
# =====================================================================


def _load_task(task_id: int) -> tuple[Task | None, tuple[Response, int] | None]:
    task = tenant_get(Task, task_id)
    if task is None:
        return None, json_error("Task not found", 404)
    if not can_view_task(task, g.current_user):
        return None, json_error("Access denied", 403)
    return task, None


def _history_type(changes: list[dict[str, Any]]) -> ChangeType:
    for change in changes:
        if change["field"] == "status" and change["new_value"] == DONE:
            return ChangeType.COMPLETED
    if {change["field"] for change in changes} == {"status", "section"}:
        return ChangeType.STATUS_CHANGED
    return change_type_for(changes)


def _update_fields(task: Task, data: dict[str, Any]) -> tuple[list | None, str | None]:
    """Validate and apply a partial update; returns ``(changes, error)``."""
    is_valid, error = validate_task_data(data)
    if not is_valid:
        return None, error

    updates = dict(data)
    status_changes: list[dict[str, Any]] = []
    if "status" in updates:
        status, error = check_task_status(task, updates.pop("status"))
        if error:
            return None, error
        status_changes = set_task_status(task, status)
    return status_changes + apply_task_changes(task, updates), None


# =====================================================================
# Collection Endpoints
# =====================================================================


@tasks_bp.route("", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def list_tasks() -> tuple[Response, int]:
    """
    List every task of the organization.

    Supports filters ``status``, ``assignee_id``, ``project_id``,
    ``priority`` and sorting via ``sort`` / ``order``.
    """
    logger.info("GET /api/tasks - organization_id=%s", g.organization_id)
    stmt = select(Task).where(Task.organization_id == g.organization_id)
    try:
        stmt = apply_task_filters(stmt, request.args)
    except ValueError as exc:
        return json_error(str(exc), 400)
    stmt = apply_task_sort(stmt, request.args)
    return task_list_response(stmt, request.args)


@tasks_bp.route("/my", methods=["GET"])
@require_auth
@require_organization
def my_tasks() -> tuple[Response, int]:
    stmt = select(Task).where(
        Task.organization_id == g.organization_id, Task.assignee_id == g.user_id
    )
    try:
        stmt = apply_task_filters(stmt, request.args)
    except ValueError as exc:
        return json_error(str(exc), 400)
    stmt = stmt.order_by(Task.updated_at.desc(), Task.id.desc())
    tasks = db.session.scalars(stmt).all()
    return jsonify({"tasks": [task.to_dict() for task in tasks], "count": len(tasks)}), 200


@tasks_bp.route("/bulk-update", methods=["POST"])
@require_auth
@require_organization
def bulk_update() -> tuple[Response, int]:
    """
    Apply the same ``updates`` to every task in ``task_ids``.

    Tasks that are missing, not editable by the caller, or for which the
    update is invalid are reported in ``skipped`` instead of failing the
    whole request.
    """
    data = get_json_body() or {}
    task_ids = data.get("task_ids")
    updates = data.get("updates")
    if not isinstance(task_ids, list) or not task_ids:
        return json_error("'task_ids' must be a non-empty list", 400)
    if not all(isinstance(task_id, int) for task_id in task_ids):
        return json_error("'task_ids' must contain integers", 400)
    if not isinstance(updates, dict) or not updates:
        return json_error("'updates' must be a non-empty object", 400)

    updated, skipped = [], []
    for task_id in task_ids:
        task = tenant_get(Task, task_id)
        if task is None or not can_edit_task(task, g.current_user):
            skipped.append(task_id)
            continue
        changes, error = _update_fields(task, updates)
        if error:
            skipped.append(task_id)
            continue
        if changes:
            record_history(task, _history_type(changes), "Bulk update", changes)
        updated.append(task)

    db.session.commit()
    logger.info("Bulk update by user_id=%s: %s updated, %s skipped", g.user_id, len(updated), len(skipped))
    return (
        jsonify(
            {
                "updated": [task.to_dict() for task in updated],
                "skipped": skipped,
                "count": len(updated),
            }
        ),
        200,
    )


# =====================================================================
# Single Task Endpoints
# =====================================================================


@tasks_bp.route("/<int:task_id>", methods=["GET"])
@require_auth
@require_organization
def get_task(task_id: int) -> tuple[Response, int]:
    task, error = _load_task(task_id)
    if error:
        return error
    return jsonify({"task": task.to_dict()}), 200


@tasks_bp.route("/<int:task_id>", methods=["PUT", "PATCH"])
@require_auth
@require_organization
def update_task(task_id: int) -> tuple[Response, int]:
    """
    Partially update a task.

    Approved tasks may only be edited by admins and project managers;
    otherwise the creator and assignee may edit as well.  Every changed
    field is recorded in the task history.
    """
    task, error = _load_task(task_id)
    if error:
        return error
    if not can_edit_task(task, g.current_user):
        return json_error("You do not have permission to edit this task", 403)

    data = get_json_body()
    if not data:
        return json_error("Request body must be JSON", 400)

    changes, message = _update_fields(task, data)
    if message:
        return json_error(message, 400)
    if changes:
        record_history(task, _history_type(changes), "Task updated", changes)
    db.session.commit()
    return jsonify({"task": task.to_dict()}), 200


@tasks_bp.route("/<int:task_id>", methods=["DELETE"])
@require_auth
@require_organization
def delete_task(task_id: int) -> tuple[Response, int]:
    task, error = _load_task(task_id)
    if error:
        return error
    if task.created_by_id != g.user_id and g.role not in MANAGER_ROLES:
        return json_error("You do not have permission to delete this task", 403)

    upload_root = current_app.config["UPLOAD_FOLDER"]
    paths = [attachment.storage_path(upload_root) for attachment in task.attachments]
    for activity in db.session.scalars(select(Activity).where(Activity.task_id == task.id)):
        activity.task_id = None
    close_review(ReviewSubject.TASK, task.id, ReviewState.REVOKED)
    record_audit(
        EntityType.TASK,
        task.id,
        AuditAction.DELETE,
        old_values={"title": task.title, "status": task.status},
    )
    db.session.delete(task)
    db.session.commit()
    remove_stored_files(paths, Path(upload_root) / "tasks" / str(task_id))
    logger.info("Task %s deleted by user_id=%s", task_id, g.user_id)
    return jsonify({"message": "Task deleted successfully"}), 200


@tasks_bp.route("/<int:task_id>/status", methods=["PATCH"])
@require_auth
@require_organization
def update_task_status(task_id: int) -> tuple[Response, int]:
    """
    Change only the status of a task.

    The value is normalised (``"Working on it"`` -> ``In Progress``), must be
    an active task status of the organization, and must follow the
    workflow graph unless the caller is an admin or project manager.
    """
    task, error = _load_task(task_id)
    if error:
        return error
    if task.assignee_id != g.user_id and not is_manager():
        return json_error("Only the assignee or a manager can change the status", 403)

    data = get_json_body() or {}
    if "status" not in data:
        return json_error("'status' field is required", 400)
    status, message = check_task_status(task, data["status"])
    if message:
        return json_error(message, 400)

    changes = set_task_status(task, status)
    if changes:
        record_history(
            task, _history_type(changes), f"Status changed to {status}", changes
        )
        logger.info("Task %s status %s -> %s", task.id, changes[0]["old_value"], status)
    db.session.commit()
    return jsonify({"task": task.to_dict()}), 200


@tasks_bp.route("/<int:task_id>/start", methods=["PATCH"])
@require_auth
@require_organization
def start_task(task_id: int) -> tuple[Response, int]:
    """
    The assignee starts working on a ``To Do`` task.

    Moves it to ``In Progress`` and creates the linked activity when the
    task has none yet.
    """
    task, error = _load_task(task_id)
    if error:
        return error
    if task.assignee_id != g.user_id:
        return json_error("Only the assignee can start this task", 403)
    if task.status != TODO:
        return json_error("Only tasks in 'To Do' can be started", 409)
    status, message = resolve_status(IN_PROGRESS, StatusType.TASK.value)
    if message:
        return json_error(message, 400)

    changes = set_task_status(task, status)
    activity = None
    if task.activity_id is None:
        activity = create_linked_activity(task, g.current_user)
    record_history(task, ChangeType.STATUS_CHANGED, "Task started", changes)
    db.session.commit()
    return (
        jsonify(
            {
                "task": task.to_dict(),
                "activity": activity.to_dict() if activity else None,
            }
        ),
        200,
    )


@tasks_bp.route("/<int:task_id>/approve", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def approve_task(task_id: int) -> tuple[Response, int]:
    task, error = _load_task(task_id)
    if error:
        return error
    if task.is_approved:
        return json_error("Task is already approved", 409)

    data = get_json_body() or {}
    note = data.get("note")
    sign_off_task(task, note.strip() if isinstance(note, str) and note.strip() else None)
    db.session.commit()
    return jsonify({"task": task.to_dict()}), 200


@tasks_bp.route("/<int:task_id>/reject", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def reject_task(task_id: int) -> tuple[Response, int]:
    """Withdraw approval and send finished work back to ``In Progress``."""
    task, error = _load_task(task_id)
    if error:
        return error
    data = get_json_body() or {}
    reason = data.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        return json_error("'reason' is required", 400)

    send_back_task(task, reason.strip())
    db.session.commit()
    return jsonify({"task": task.to_dict()}), 200


@tasks_bp.route("/<int:task_id>/history", methods=["GET"])
@require_auth
@require_organization
def get_task_history(task_id: int) -> tuple[Response, int]:
    task, error = _load_task(task_id)
    if error:
        return error
    entries = db.session.scalars(
        select(TaskHistory)
        .where(TaskHistory.task_id == task.id)
        .order_by(TaskHistory.created_at.desc(), TaskHistory.id.desc())
    ).all()
    return jsonify({"history": [entry.to_dict() for entry in entries], "count": len(entries)}), 200
