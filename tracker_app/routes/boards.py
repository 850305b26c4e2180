"""
Board API endpoints.

Endpoints:
    GET    /api/boards                 - Boards the user can access
    POST   /api/boards                 - Create a board
    GET    /api/boards/me              - Active boards owned by the caller
    GET    /api/boards/<id>            - Retrieve a board
    PUT    /api/boards/<id>            - Update a board (owner/admin/PM)
    DELETE /api/boards/<id>            - Archive a board (owner/admin)
    GET    /api/boards/<id>/tasks      - Filtered/paged/grouped task listing
    GET    /api/boards/<id>/tasks.csv  - CSV export of the board (admin/PM/PMO)
    POST   /api/boards/<id>/tasks      - Create a task at the end of a section
    POST   /api/boards/<id>/move       - Drag-and-drop a task

Key Concepts Demonstrated:
- Soft deletion via an ``is_active`` flag
- Contiguous per-section positions maintained by ``reorder_section``
- Board groups that couple a lane with a status
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..models import Board, Project, Task
from ..reorder import reorder_section
from ..workflow import (
    MANAGER_ROLES,
    OVERSIGHT_ROLES,
    TODO,
    ChangeType,
    StatusType,
    TaskPriority,
    UserRole,
    board_group_for_status,
    group_for_section,
    move_target,
    section_for_status,
    task_priority_from,
)
from .common import (
    apply_task_filters,
    apply_task_sort,
    can_access_board,
    can_edit_task,
    check_task_status,
    csv_response,
    get_json_body,
    is_project_member,
    json_error,
    next_position,
    parse_datetime,
    record_history,
    resolve_status,
    set_task_status,
    task_list_response,
    tenant_get,
    validate_required_fields,
    validate_task_data,
)

logger = logging.getLogger(__name__)

boards_bp = Blueprint("boards", __name__)

BOARD_CSV_COLUMNS = (
    "id",
    "title",
    "section",
    "position",
    "status",
    "priority",
    "assignee_name",
    "due_date",
    "tags",
    "is_approved",
    "created_by_name",
    "created_at",
)


def _get_board(board_id: int) -> tuple[Board | None, tuple[Response, int] | None]:
    """Load an active board of the tenant and check access."""
    board = tenant_get(Board, board_id)
    if board is None or not board.is_active:
        return None, json_error("Board not found", 404)
    if not can_access_board(board, g.current_user):
        return None, json_error("Access denied", 403)
    return board, None


@boards_bp.route("", methods=["GET"])
@require_auth
@require_organization
def list_boards() -> tuple[Response, int]:
    stmt = select(Board).where(
        Board.organization_id == g.organization_id, Board.is_active.is_(True)
    )
    project_id = request.args.get("project_id", type=int)
    if project_id is not None:
        stmt = stmt.where(Board.project_id == project_id)

    boards = [
        board
        for board in db.session.scalars(stmt.order_by(Board.created_at.desc(), Board.id.desc()))
        if can_access_board(board, g.current_user)
    ]
    return jsonify({"boards": [b.to_dict() for b in boards], "count": len(boards)}), 200


@boards_bp.route("", methods=["POST"])
@require_auth
@require_organization
def create_board() -> tuple[Response, int]:
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["name"])
    if missing:
        return json_error(missing, 400)
    if len(data["name"].strip()) > 200:
        return json_error("name must be 200 characters or less", 400)

    project_id = data.get("project_id")
    if project_id is not None:
        project = tenant_get(Project, project_id) if isinstance(project_id, int) else None
        if project is None:
            return json_error("Project not found", 404)
        if g.role not in MANAGER_ROLES and not is_project_member(project.id, g.user_id):
            return json_error("You are not a member of this project", 403)

    board = Board(
        name=data["name"].strip(),
        description=data.get("description"),
        project_id=project_id,
        organization_id=g.organization_id,
        owner_id=g.user_id,
    )
    db.session.add(board)
    db.session.flush()
    record_audit(EntityType.BOARD, board.id, AuditAction.CREATE, new_values={"name": board.name})
    db.session.commit()
    return jsonify({"board": board.to_dict()}), 201


@boards_bp.route("/me", methods=["GET"])
@require_auth
@require_organization
def my_boards() -> tuple[Response, int]:
    """Active boards owned by the caller, most recently updated first."""
    boards = db.session.scalars(
        select(Board)
        .where(
            Board.organization_id == g.organization_id,
            Board.owner_id == g.user_id,
            Board.is_active.is_(True),
        )
        .order_by(Board.updated_at.desc(), Board.id.desc())
    ).all()
    return jsonify({"boards": [b.to_dict() for b in boards], "count": len(boards)}), 200


@boards_bp.route("/<int:board_id>", methods=["GET"])
@require_auth
@require_organization
def get_board(board_id: int) -> tuple[Response, int]:
    board, error = _get_board(board_id)
    if error:
        return error
    return jsonify({"board": board.to_dict()}), 200


@boards_bp.route("/<int:board_id>", methods=["PUT"])
@require_auth
@require_organization
def update_board(board_id: int) -> tuple[Response, int]:
    board, error = _get_board(board_id)
    if error:
        return error
    if board.owner_id != g.user_id and g.role not in MANAGER_ROLES:
        return json_error("Access denied", 403)

    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)
    if "name" in data:
        if not isinstance(data["name"], str) or not data["name"].strip():
            return json_error("'name' is required", 400)
        board.name = data["name"].strip()
    if "description" in data:
        board.description = data["description"]
    db.session.commit()
    return jsonify({"board": board.to_dict()}), 200


@boards_bp.route("/<int:board_id>", methods=["DELETE"])
@require_auth
@require_organization
def delete_board(board_id: int) -> tuple[Response, int]:
    board, error = _get_board(board_id)
    if error:
        return error
    if board.owner_id != g.user_id and g.role != UserRole.ADMIN.value:
        return json_error("Access denied", 403)
    board.is_active = False
    record_audit(EntityType.BOARD, board.id, AuditAction.DELETE, old_values={"name": board.name})
    db.session.commit()
    logger.info("Board %s archived by user_id=%s", board.id, g.user_id)
    return jsonify({"message": "Board deleted successfully"}), 200


@boards_bp.route("/<int:board_id>/tasks", methods=["GET"])
@require_auth
@require_organization
def list_board_tasks(board_id: int) -> tuple[Response, int]:
    board, error = _get_board(board_id)
    if error:
        return error
    stmt = select(Task).where(Task.board_id == board.id)
    try:
        stmt = apply_task_filters(stmt, request.args)
    except ValueError as exc:
        return json_error(str(exc), 400)
    stmt = apply_task_sort(stmt, request.args, default="position", default_order="asc")
    return task_list_response(stmt, request.args)


@boards_bp.route("/<int:board_id>/tasks.csv", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def export_board_tasks(board_id: int) -> Response | tuple[Response, int]:
    """Board tasks as CSV, honouring the same filters as the JSON listing."""
    board, error = _get_board(board_id)
    if error:
        return error
    stmt = select(Task).where(Task.board_id == board.id)
    try:
        stmt = apply_task_filters(stmt, request.args)
    except ValueError as exc:
        return json_error(str(exc), 400)
    stmt = apply_task_sort(stmt, request.args, default="position", default_order="asc")

    rows = []
    for task in db.session.scalars(stmt):
        row = task.to_dict()
        row["tags"] = "; ".join(row["tags"])
        rows.append(row)

    record_audit(EntityType.BOARD, board.id, AuditAction.EXPORT, new_values={"rows": len(rows)})
    db.session.commit()
    logger.info("Board %s exported by user_id=%s", board.id, g.user_id)
    return csv_response(rows, BOARD_CSV_COLUMNS, f"board-{board.id}-tasks.csv")


@boards_bp.route("/<int:board_id>/tasks", methods=["POST"])
@require_auth
@require_organization
def create_board_task(board_id: int) -> tuple[Response, int]:
    """Create a task positioned after the last task of its section."""
    board, error = _get_board(board_id)
    if error:
        return error
    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)
    is_valid, message = validate_task_data(data, required_fields=["title"])
    if not is_valid:
        return json_error(message, 400)

    status = TODO
    if "status" in data:
        status, message = resolve_status(data["status"], StatusType.TASK.value)
        if message:
            return json_error(message, 400)
    section = (data.get("section") or section_for_status(status)).strip()

    task = Task(
        board_id=board.id,
        project_id=board.project_id,
        organization_id=board.organization_id,
        created_by_id=g.user_id,
        assignee_id=data.get("assignee_id"),
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
    db.session.commit()
    return jsonify({"task": task.to_dict()}), 201


@boards_bp.route("/<int:board_id>/move", methods=["POST"])
@require_auth
@require_organization
def move_task(board_id: int) -> tuple[Response, int]:
    """
    Move a task to another position and/or section of the board.

    Body: ``task_id``, either ``group`` (``todo`` / ``completed``) or
    ``section``, and an optional ``index`` (defaults to the end).  Entering
    a different group, directly or through its lane name, changes the
    task's status under the same catalog and workflow rules as
    ``PATCH /api/tasks/<id>/status``.
    """
    board, error = _get_board(board_id)
    if error:
        return error
    data = get_json_body() or {}

    task_id = data.get("task_id")
    if not isinstance(task_id, int) or isinstance(task_id, bool):
        return json_error("'task_id' is required", 400)
    task = db.session.scalar(
        select(Task).where(Task.id == task_id, Task.board_id == board.id)
    )
    if task is None:
        return json_error("Task not found", 404)
    if not can_edit_task(task, g.current_user):
        return json_error("You do not have permission to move this task", 403)

    if data.get("group") is not None:
        group = data["group"]
    elif isinstance(data.get("section"), str) and data["section"].strip():
        group = group_for_section(data["section"])
    else:
        return json_error("'group' or 'section' is required", 400)

    section = data["section"].strip() if group is None else None
    new_status = None
    if group is not None:
        try:
            section, group_status = move_target(group)
        except ValueError as exc:
            return json_error(str(exc), 400)
        if board_group_for_status(task.status) != group.strip().lower():
            new_status, message = check_task_status(task, group_status)
            if message:
                return json_error(message, 400)

    index = data.get("index")
    if index is None:
        index = 1 << 30
    elif not isinstance(index, int) or isinstance(index, bool):
        return json_error("index must be an integer", 400)

    old_section, old_position = task.section, task.position
    board_tasks = db.session.scalars(select(Task).where(Task.board_id == board.id)).all()
    changed = reorder_section(board_tasks, task, section, index)

    changes = []
    if old_section != task.section:
        changes.append({"field": "section", "old_value": old_section, "new_value": task.section})
    if old_position != task.position:
        changes.append(
            {"field": "position", "old_value": old_position, "new_value": task.position}
        )
    if new_status is not None:
        changes.extend(set_task_status(task, new_status, reposition=False))

    if changes:
        change_type = (
            ChangeType.STATUS_CHANGED
            if any(change["field"] == "status" for change in changes)
            else ChangeType.UPDATED
        )
        record_history(task, change_type, f"Task moved to {task.section}", changes)
    db.session.commit()
    logger.info(
        "Task %s moved to %s[%s] on board %s", task.id, task.section, task.position, board.id
    )
    return (
        jsonify({"task": task.to_dict(), "updated": [t.to_dict() for t in changed]}),
        200,
    )
