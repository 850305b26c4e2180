"""
Project API endpoints.

Endpoints:
    GET    /api/projects                          - List projects
    POST   /api/projects                          - Create a project (admin/PM/PMO)
    GET    /api/projects/<id>                     - Retrieve a project
    PUT    /api/projects/<id>                     - Update a project
    DELETE /api/projects/<id>                     - Delete an unused project
    GET    /api/projects/<id>/members             - List members
    POST   /api/projects/<id>/members             - Add a member (admin/PM)
    DELETE /api/projects/<id>/members/<user_id>   - Remove a member (admin/PM)
    GET    /api/projects/<id>/tasks               - Filtered task listing
    POST   /api/projects/<id>/tasks               - PM creates and assigns a task
    POST   /api/projects/<id>/tasks/self          - Member creates own task

Key Concepts Demonstrated:
- Association-model membership with per-project roles
- Role-dependent visibility (members only see their projects)
- Shared filter/sort/group helpers for task listings
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import func, select

from .. import db
from ..auth import require_auth, require_organization, require_roles
from ..models import Activity, Board, Project, ProjectMember, Task
from ..workflow import (
    IN_PROGRESS,
    MANAGER_ROLES,
    OVERSIGHT_ROLES,
    TODO,
    ChangeType,
    ProjectStatus,
    TaskPriority,
    UserRole,
    section_for_status,
    task_priority_from,
)
from .common import (
    add_project_member,
    apply_task_filters,
    apply_task_sort,
    create_linked_activity,
    get_json_body,
    get_or_create_default_board,
    has_oversight,
    is_project_member,
    json_error,
    next_position,
    parse_datetime,
    record_history,
    task_list_response,
    tenant_get,
    tenant_user,
    validate_required_fields,
    validate_task_data,
)

logger = logging.getLogger(__name__)

projects_bp = Blueprint("projects", __name__)


# =====================================================================
# Helper Functions
# =====================================================================


def _validate_project_status(data: dict) -> str | None:
    if "status" in data:
        valid = [s.value for s in ProjectStatus]
        if data["status"] not in valid:
            return f"Invalid status. Must be one of: {valid}"
    return None


def _can_view_project(project: Project) -> bool:
    return has_oversight() or project.has_member(g.user_id)


def _can_manage_project(project: Project) -> bool:
    return g.role in MANAGER_ROLES or project.owner_id == g.user_id


def _new_task(project: Project, data: dict, assignee_id: int, status: str) -> Task:
    board = get_or_create_default_board(project)
    section = section_for_status(status)
    task = Task(
        board_id=board.id,
        project_id=project.id,
        organization_id=project.organization_id,
        created_by_id=g.user_id,
        assignee_id=assignee_id,
        title=data["title"].strip(),
        description=data.get("description"),
        status=status,
        priority=task_priority_from(data.get("priority", TaskPriority.MEDIUM.value)).value,
        due_date=parse_datetime(data.get("due_date")),
        tags=list(data.get("tags") or []),
        custom_data=dict(data.get("custom_data") or {}),
        section=section,
        position=next_position(board.id, section),
    )
    db.session.add(task)
    db.session.flush()
    record_history(task, ChangeType.CREATED, f"Task '{task.title}' created")
    return task


# =====================================================================
# Projects
# =====================================================================


@projects_bp.route("", methods=["GET"])
@require_auth
@require_organization
def list_projects() -> tuple[Response, int]:
    stmt = select(Project).where(Project.organization_id == g.organization_id)
    if not has_oversight():
        stmt = stmt.join(ProjectMember).where(ProjectMember.user_id == g.user_id)
    status = request.args.get("status")
    if status:
        stmt = stmt.where(Project.status == status)

    projects = db.session.scalars(stmt.order_by(Project.created_at.desc(), Project.id.desc())).all()
    return (
        jsonify({"projects": [p.to_dict() for p in projects], "count": len(projects)}),
        200,
    )


@projects_bp.route("", methods=["POST"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def create_project() -> tuple[Response, int]:
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["name"])
    if missing:
        return json_error(missing, 400)
    if len(data["name"].strip()) > 200:
        return json_error("name must be 200 characters or less", 400)
    error = _validate_project_status(data)
    if error:
        return json_error(error, 400)

    project = Project(
        name=data["name"].strip(),
        description=data.get("description"),
        status=data.get("status", ProjectStatus.ACTIVE.value),
        organization_id=g.organization_id,
        owner_id=g.user_id,
    )
    add_project_member(project, g.user_id, role="owner")
    db.session.add(project)
    db.session.commit()
    logger.info("Project %s created by user_id=%s", project.id, g.user_id)
    return jsonify({"project": project.to_dict()}), 201


@projects_bp.route("/<int:project_id>", methods=["GET"])
@require_auth
@require_organization
def get_project(project_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    if not _can_view_project(project):
        return json_error("Access denied", 403)
    data = project.to_dict()
    data["members"] = [membership.to_dict() for membership in project.memberships]
    return jsonify({"project": data}), 200


@projects_bp.route("/<int:project_id>", methods=["PUT"])
@require_auth
@require_organization
def update_project(project_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    if not _can_manage_project(project):
        return json_error("Access denied", 403)

    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)
    if "name" in data:
        if not isinstance(data["name"], str) or not data["name"].strip():
            return json_error("'name' is required", 400)
        if len(data["name"].strip()) > 200:
            return json_error("name must be 200 characters or less", 400)
    error = _validate_project_status(data)
    if error:
        return json_error(error, 400)

    if "name" in data:
        project.name = data["name"].strip()
    if "description" in data:
        project.description = data["description"]
    if "status" in data:
        project.status = data["status"]
    db.session.commit()
    return jsonify({"project": project.to_dict()}), 200


@projects_bp.route("/<int:project_id>", methods=["DELETE"])
@require_auth
@require_organization
def delete_project(project_id: int) -> tuple[Response, int]:
    """Delete a project that no task or activity references (409 otherwise)."""
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    if g.role != UserRole.ADMIN.value and project.owner_id != g.user_id:
        return json_error("Access denied", 403)

    task_count = db.session.scalar(
        select(func.count(Task.id)).where(Task.project_id == project.id)
    )
    activity_count = db.session.scalar(
        select(func.count(Activity.id)).where(Activity.project_id == project.id)
    )
    if task_count or activity_count:
        return json_error("Project has tasks or activities and cannot be deleted", 409)

    for board in db.session.scalars(select(Board).where(Board.project_id == project.id)):
        db.session.delete(board)
    db.session.delete(project)
    db.session.commit()
    logger.info("Project %s deleted by user_id=%s", project_id, g.user_id)
    return jsonify({"message": "Project deleted successfully"}), 200


# =====================================================================
# Members
# =====================================================================


@projects_bp.route("/<int:project_id>/members", methods=["GET"])
@require_auth
@require_organization
def list_members(project_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    if not _can_view_project(project):
        return json_error("Access denied", 403)
    members = [membership.to_dict() for membership in project.memberships]
    return jsonify({"members": members, "count": len(members)}), 200


@projects_bp.route("/<int:project_id>/members", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def add_member(project_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    data = get_json_body() or {}
    user = tenant_user(data.get("user_id"))
    if user is None:
        return json_error("user_id must reference a user of your organization", 400)
    if not add_project_member(project, user.id, role=data.get("role") or "member"):
        return json_error("User is already a member of this project", 400)
    db.session.commit()
    return jsonify({"members": [m.to_dict() for m in project.memberships]}), 201


@projects_bp.route("/<int:project_id>/members/<int:user_id>", methods=["DELETE"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def remove_member(project_id: int, user_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    membership = next((m for m in project.memberships if m.user_id == user_id), None)
    if membership is None:
        return json_error("User is not a member of this project", 404)
    project.memberships.remove(membership)
    db.session.commit()
    return jsonify({"message": "Member removed successfully"}), 200


# =====================================================================
# Project Tasks
# =====================================================================


@projects_bp.route("/<int:project_id>/tasks", methods=["GET"])
@require_auth
@require_organization
def list_project_tasks(project_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    if not _can_view_project(project):
        return json_error("Access denied", 403)

    stmt = select(Task).where(
        Task.project_id == project.id, Task.organization_id == g.organization_id
    )
    try:
        stmt = apply_task_filters(stmt, request.args)
    except ValueError as exc:
        return json_error(str(exc), 400)
    stmt = apply_task_sort(stmt, request.args)
    return task_list_response(stmt, request.args)


@projects_bp.route("/<int:project_id>/tasks", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def create_project_task(project_id: int) -> tuple[Response, int]:
    """
    Create a task on the project's default board and assign it.

    ``assignee_id`` is required; the assignee joins the project if needed.
    The task starts in ``To Do``.
    """
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)
    if data.get("assignee_id") is None:
        return json_error("'assignee_id' is required", 400)
    is_valid, error = validate_task_data(data, required_fields=["title"])
    if not is_valid:
        return json_error(error, 400)

    add_project_member(project, data["assignee_id"])
    task = _new_task(project, data, data["assignee_id"], TODO)
    db.session.commit()
    logger.info(
        "Task %s created in project %s and assigned to user_id=%s",
        task.id,
        project.id,
        task.assignee_id,
    )
    return jsonify({"task": task.to_dict()}), 201


@projects_bp.route("/<int:project_id>/tasks/self", methods=["POST"])
@require_auth
@require_organization
def create_self_task(project_id: int) -> tuple[Response, int]:
    """
    Let a project member record work they are doing themselves.

    The task is assigned to the caller, starts ``In Progress`` and gets a
    linked draft activity.
    """
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    if g.role not in MANAGER_ROLES and not is_project_member(project.id, g.user_id):
        return json_error("You are not a member of this project", 403)

    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)
    data = {key: value for key, value in data.items() if key != "assignee_id"}
    is_valid, error = validate_task_data(data, required_fields=["title"])
    if not is_valid:
        return json_error(error, 400)

    task = _new_task(project, data, g.user_id, IN_PROGRESS)
    activity = create_linked_activity(task, g.current_user)
    db.session.commit()
    return jsonify({"task": task.to_dict(), "activity": activity.to_dict()}), 201
