"""
Helpers shared by the API blueprints.

Request parsing, validation, tenant-scoped lookups, task access rules, task
history recording and the list/filter/group machinery used by both the
project and the board task listings.
"""

from __future__ import annotations

import csv
import io
import logging
import re
import secrets
import string
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from flask import Response, g, jsonify, request
from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..models import (
    Activity,
    ApprovalRequest,
    Board,
    Project,
    ProjectMember,
    StatusConfiguration,
    Task,
    TaskHistory,
    User,
    utcnow,
)
from ..workflow import (
    DEFAULT_STATUS_CATALOG,
    DEFAULT_STATUSES,
    MANAGER_ROLES,
    OVERSIGHT_ROLES,
    PRIORITY_RANK,
    ApprovalState,
    ChangeType,
    ReviewState,
    ReviewSubject,
    StatusType,
    UserRole,
    board_group_for_status,
    generate_ticket_number,
    is_completed_status,
    is_valid_transition,
    normalize_task_status,
    section_for_status,
    task_priority_from,
    task_to_activity_priority,
)

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 200


# =====================================================================
# Request Helpers
# =====================================================================


def json_error(message: str, status_code: int) -> tuple[Response, int]:
    """Build the standard ``{"error": "..."}`` response."""
    return jsonify({"error": message}), status_code


def get_json_body() -> dict[str, Any] | None:
    """Return the request body when it is a JSON object, else ``None``."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


def validate_required_fields(
    data: dict[str, Any], required_fields: list[str]
) -> str | None:
    """
    Check that every field in *required_fields* is a non-blank string.

    Returns:
        An error message for the first missing field, or ``None``.
    """
    for field in required_fields:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            return f"'{field}' is required"
    return None


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse an optional ISO-8601 date or datetime into an aware UTC datetime.

    Raises:
        ValueError: If *value* is not a valid ISO-8601 string.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("Invalid date format. Use ISO format (YYYY-MM-DDTHH:MM:SS)")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(value), datetime.min.time())
        except ValueError as exc:
            raise ValueError(
                "Invalid date format. Use ISO format (YYYY-MM-DDTHH:MM:SS)"
            ) from exc
    return ensure_utc(parsed)


def parse_int_arg(name: str) -> int | None:
    """Read an optional integer query-string argument (invalid -> ``None``)."""
    return request.args.get(name, type=int)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def is_manager() -> bool:
    return g.role in MANAGER_ROLES


def has_oversight() -> bool:
    return g.role in OVERSIGHT_ROLES


# =====================================================================
# Tenant-Scoped Lookups
# =====================================================================


def tenant_get(model: type, object_id: int):
    """
    Fetch *model* row *object_id* inside the caller's organization.

    Rows of other tenants are indistinguishable from missing rows.
    """
    if g.organization_id is None:
        return None
    return db.session.scalar(
        select(model).where(
            model.id == object_id, model.organization_id == g.organization_id
        )
    )


def tenant_user(user_id: Any) -> User | None:
    if not isinstance(user_id, int) or isinstance(user_id, bool) or g.organization_id is None:
        return None
    return db.session.scalar(
        select(User).where(
            User.id == user_id, User.organization_id == g.organization_id
        )
    )


def is_project_member(project_id: int | None, user_id: int) -> bool:
    if project_id is None:
        return False
    return (
        db.session.scalar(
            select(ProjectMember.id).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        )
        is not None
    )


def add_project_member(project: Project, user_id: int, role: str = "member") -> bool:
    """Add *user_id* to *project*; returns ``False`` if already a member."""
    if project.has_member(user_id):
        return False
    project.memberships.append(ProjectMember(user_id=user_id, role=role))
    return True


# =====================================================================
# Status Catalog
# =====================================================================


def seed_default_statuses(organization_id: int) -> int:
    """Create the default status catalog rows that are missing for a tenant."""
    existing = {
        (row.type, row.name)
        for row in db.session.scalars(
            select(StatusConfiguration).where(
                StatusConfiguration.organization_id == organization_id
            )
        )
    }
    created = 0
    for status_type, name, color, order_index in DEFAULT_STATUS_CATALOG:
        if (status_type, name) in existing:
            continue
        db.session.add(
            StatusConfiguration(
                organization_id=organization_id,
                type=status_type,
                name=name,
                color=color,
                order_index=order_index,
            )
        )
        created += 1
    return created


def active_status_names(status_type: str, organization_id: int | None = None) -> list[str]:
    """
    Names of the active statuses of *status_type* for the tenant.

    Falls back to the default statuses when the tenant has no catalog for
    the work-item types.
    """
    org_id = organization_id if organization_id is not None else g.organization_id
    names = list(
        db.session.scalars(
            select(StatusConfiguration.name)
            .where(
                StatusConfiguration.organization_id == org_id,
                StatusConfiguration.type == status_type,
                StatusConfiguration.is_active.is_(True),
            )
            .order_by(StatusConfiguration.order_index)
        )
    )
    if not names and status_type != StatusType.APPROVAL.value:
        return list(DEFAULT_STATUSES)
    return names


def resolve_status(value: Any, status_type: str) -> tuple[str | None, str | None]:
    """
    Normalise *value* and check it against the tenant's active catalog.

    Returns:
        ``(status, None)`` on success or ``(None, error_message)``.
    """
    try:
        status = normalize_task_status(value)
    except ValueError as exc:
        return None, str(exc)
    allowed = active_status_names(status_type)
    if status not in allowed:
        return None, f"Invalid status. Must be one of: {allowed}"
    return status, None


# =====================================================================
# Tasks
# =====================================================================

TRACKED_TASK_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "assignee_id",
    "tags",
    "custom_data",
    "section",
)


def validate_task_data(
    data: dict[str, Any], required_fields: list[str] | None = None
) -> tuple[bool, str | None]:
    """
    Validate a task payload.

    Returns:
        ``(is_valid, error_message)``; ``error_message`` is ``None`` when
        valid.
    """
    if required_fields:
        error = validate_required_fields(data, required_fields)
        if error:
            return False, error

    if "title" in data:
        title = data["title"]
        if not isinstance(title, str) or not title.strip():
            return False, "'title' is required"
        if len(title) > 200:
            return False, "Title must be 200 characters or less"

    if "priority" in data:
        try:
            task_priority_from(data["priority"])
        except ValueError as exc:
            return False, str(exc)

    if data.get("due_date") is not None:
        try:
            parse_datetime(data["due_date"])
        except ValueError as exc:
            return False, str(exc)

    if "tags" in data and data["tags"] is not None:
        if not isinstance(data["tags"], list) or not all(
            isinstance(tag, str) for tag in data["tags"]
        ):
            return False, "tags must be a list of strings"

    if "custom_data" in data and data["custom_data"] is not None:
        if not isinstance(data["custom_data"], dict):
            return False, "custom_data must be an object"

    if "section" in data:
        if not isinstance(data["section"], str) or not data["section"].strip():
            return False, "section must be a non-empty string"

    if data.get("assignee_id") is not None and tenant_user(data["assignee_id"]) is None:
        return False, "assignee_id must reference a user of your organization"

    return True, None


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value


def apply_task_changes(task: Task, data: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Apply already validated *data* to *task* and return the change set.

    ``status`` is expected to be resolved by the caller.
    """
    changes = []
    for field in TRACKED_TASK_FIELDS:
        if field not in data:
            continue
        new_value = data[field]
        if field == "title":
            new_value = new_value.strip()
        elif field == "priority":
            new_value = task_priority_from(new_value).value
        elif field == "due_date":
            new_value = parse_datetime(new_value)
        elif field == "tags":
            new_value = list(new_value or [])
        elif field == "custom_data":
            new_value = dict(new_value or {})
        elif field == "section":
            new_value = new_value.strip()

        old_value = getattr(task, field)
        if _comparable(old_value) == _comparable(new_value):
            continue
        setattr(task, field, new_value)
        changes.append(
            {
                "field": field,
                "old_value": _comparable(old_value),
                "new_value": _comparable(new_value),
            }
        )
    return changes


def change_type_for(changes: list[dict[str, Any]]) -> ChangeType:
    """Pick the most specific history type for a change set."""
    fields = {change["field"] for change in changes}
    if fields == {"status"}:
        return ChangeType.STATUS_CHANGED
    if fields == {"assignee_id"}:
        return ChangeType.ASSIGNED
    if fields == {"priority"}:
        return ChangeType.PRIORITY_CHANGED
    return ChangeType.UPDATED


def record_history(
    task: Task,
    change_type: ChangeType,
    description: str | None = None,
    changes: list[dict[str, Any]] | None = None,
) -> TaskHistory:
    entry = TaskHistory(
        task_id=task.id,
        actor_id=g.user_id,
        change_type=change_type.value,
        description=description,
        changes=changes or [],
    )
    db.session.add(entry)
    return entry


def can_view_activity(activity: Activity, user: User) -> bool:
    if activity.organization_id != user.organization_id:
        return False
    return (
        user.role in OVERSIGHT_ROLES
        or activity.created_by_id == user.id
        or user.id in activity.assignee_ids
    )


def can_view_task(task: Task, user: User) -> bool:
    """
    Creator, assignee, project member, admin, PM or PMO of the tenant.
    """
    if task.organization_id != user.organization_id:
        return False
    if user.role in OVERSIGHT_ROLES:
        return True
    if user.id in (task.created_by_id, task.assignee_id):
        return True
    return is_project_member(task.project_id, user.id)


def can_edit_task(task: Task, user: User) -> bool:
    """
    Approved tasks are editable only by admins and project managers;
    otherwise the creator and assignee may edit too.
    """
    if task.organization_id != user.organization_id:
        return False
    if user.role in MANAGER_ROLES:
        return True
    if task.is_approved:
        return False
    return user.id in (task.created_by_id, task.assignee_id)


def next_position(board_id: int | None, section: str) -> int:
    """Position after the last task of *section* on the board."""
    current = db.session.scalar(
        select(func.max(Task.position)).where(
            Task.board_id == board_id, Task.section == section
        )
    )
    return 0 if current is None else current + 1


# =====================================================================
# Task Status Changes and Review Requests
# =====================================================================


def check_task_status(task: Task, value: Any) -> tuple[str | None, str | None]:
    """
    Resolve *value* against the tenant's task catalog and check that the
    caller may move *task* there.

    Non-managers must follow the default workflow graph.

    Returns:
        ``(status, None)`` on success or ``(None, error_message)``.
    """
    status, error = resolve_status(value, StatusType.TASK.value)
    if error:
        return None, error
    if not is_manager() and not is_valid_transition(
        StatusType.TASK.value, task.status, status
    ):
        return None, f"Invalid status transition from '{task.status}' to '{status}'"
    return status, None


def set_task_status(
    task: Task, new_status: str, *, reposition: bool = True
) -> list[dict[str, Any]]:
    """
    Set an already checked *new_status* on *task*.

    With ``reposition`` the task moves to the end of the matching board
    section when its board group changes.  The status is mirrored onto the
    linked activity.  Finishing an unapproved task opens a review request;
    leaving the completed group revokes a pending one.
    """
    old_status = task.status
    if old_status == new_status:
        return []
    changes = [{"field": "status", "old_value": old_status, "new_value": new_status}]
    task.status = new_status
    if reposition and board_group_for_status(old_status) != board_group_for_status(new_status):
        old_section = task.section
        task.section = section_for_status(new_status)
        task.position = next_position(task.board_id, task.section)
        changes.append(
            {"field": "section", "old_value": old_section, "new_value": task.section}
        )
    if task.activity_id is not None:
        activity = db.session.get(Activity, task.activity_id)
        if activity is not None:
            activity.status = new_status

    if is_completed_status(new_status) and not task.is_approved:
        open_review(ReviewSubject.TASK, task)
    elif is_completed_status(old_status) and not is_completed_status(new_status):
        close_review(ReviewSubject.TASK, task.id, ReviewState.REVOKED)
    return changes


def approver_for_project(project_id: int | None) -> int | None:
    """The project owner when they can approve, otherwise ``None`` (any manager)."""
    project = db.session.get(Project, project_id) if project_id is not None else None
    owner = project.owner if project is not None else None
    if owner is not None and owner.is_active and owner.role in MANAGER_ROLES:
        return owner.id
    return None


def pending_review(subject: ReviewSubject, entity_id: int) -> ApprovalRequest | None:
    return db.session.scalar(
        select(ApprovalRequest).where(
            ApprovalRequest.entity_type == subject.value,
            ApprovalRequest.entity_id == entity_id,
            ApprovalRequest.state == ReviewState.PENDING.value,
        )
    )


def open_review(subject: ReviewSubject, entity: Task | Activity) -> ApprovalRequest:
    """Open a review request for *entity* unless one is already pending."""
    review = pending_review(subject, entity.id)
    if review is not None:
        return review
    review = ApprovalRequest(
        organization_id=entity.organization_id,
        entity_type=subject.value,
        entity_id=entity.id,
        requested_by_id=g.user_id,
        approver_id=approver_for_project(entity.project_id),
        snapshot=entity.to_dict(),
    )
    db.session.add(review)
    logger.info("Review requested for %s %s", subject.value, entity.id)
    return review


def close_review(
    subject: ReviewSubject,
    entity_id: int,
    state: ReviewState,
    comments: str | None = None,
) -> ApprovalRequest | None:
    """Settle the pending review of an entity, if there is one."""
    review = pending_review(subject, entity_id)
    if review is None:
        return None
    review.state = state.value
    review.processed_by_id = g.user_id
    review.processed_at = utcnow()
    if comments:
        review.comments = comments
    return review


# =====================================================================
# Boards and Linked Activities
# =====================================================================


def can_access_board(board: Board, user: User) -> bool:
    if board.organization_id != user.organization_id:
        return False
    if board.owner_id == user.id or user.role in OVERSIGHT_ROLES:
        return True
    return is_project_member(board.project_id, user.id)


def get_or_create_default_board(project: Project) -> Board:
    board = db.session.scalar(
        select(Board)
        .where(Board.project_id == project.id, Board.is_active.is_(True))
        .order_by(Board.id)
    )
    if board is None:
        board = Board(
            name=f"{project.name} Board",
            project_id=project.id,
            organization_id=project.organization_id,
            owner_id=project.owner_id or g.user_id,
        )
        db.session.add(board)
        db.session.flush()
        logger.info("Created default board %s for project %s", board.id, project.id)
    return board


def create_linked_activity(task: Task, actor: User) -> Activity | None:
    """
    Create the Activity that mirrors *task* and link the two.

    Tasks without a project cannot carry an activity and yield ``None``.
    """
    if task.project_id is None:
        return None
    activity = Activity(
        ticket_number=generate_ticket_number(),
        title=task.title,
        description=task.description,
        start_date=utcnow(),
        end_date=task.due_date,
        status=task.status,
        approval_state=ApprovalState.DRAFT.value,
        priority=task_to_activity_priority(task.priority).value,
        tags=list(task.tags or []),
        project_id=task.project_id,
        organization_id=task.organization_id,
        created_by_id=actor.id,
        task_id=task.id,
    )
    if task.assignee is not None:
        activity.assignees = [task.assignee]
    db.session.add(activity)
    db.session.flush()
    task.activity_id = activity.id
    logger.info("Linked activity %s to task %s", activity.ticket_number, task.id)
    return activity


# =====================================================================
# Listing: Filters, Sorting, Pagination, Grouping
# =====================================================================

SORTABLE_TASK_FIELDS = (
    "position",
    "created_at",
    "updated_at",
    "due_date",
    "priority",
    "status",
    "title",
)
GROUPABLE_TASK_FIELDS = ("status", "priority", "assignee", "section")


def apply_task_filters(stmt, args) -> Any:
    """
    Narrow a ``select(Task)`` using the common list query-string filters.

    Raises:
        ValueError: If a date filter is malformed.
    """
    status = args.get("status")
    if status:
        stmt = stmt.where(Task.status == normalize_task_status(status))

    priority = args.get("priority")
    if priority:
        stmt = stmt.where(Task.priority == task_priority_from(priority).value)

    assignee_id = args.get("assignee_id", type=int)
    if assignee_id is not None:
        stmt = stmt.where(Task.assignee_id == assignee_id)

    project_id = args.get("project_id", type=int)
    if project_id is not None:
        stmt = stmt.where(Task.project_id == project_id)

    section = args.get("section")
    if section:
        stmt = stmt.where(Task.section == section)

    due_from = parse_datetime(args.get("due_from"))
    if due_from is not None:
        stmt = stmt.where(Task.due_date >= due_from)
    due_to = parse_datetime(args.get("due_to"))
    if due_to is not None:
        stmt = stmt.where(Task.due_date <= due_to)

    search = (args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))
    return stmt


def apply_task_sort(stmt, args, default: str = "created_at", default_order: str = "desc"):
    """Order by a whitelisted column; ``priority`` sorts by urgency, not by label."""
    sort_field = args.get("sort", default)
    if sort_field not in SORTABLE_TASK_FIELDS:
        sort_field = default
    if sort_field == "priority":
        column = case(PRIORITY_RANK, value=Task.priority, else_=-1)
    else:
        column = getattr(Task, sort_field)
    order = args.get("order", default_order)
    stmt = stmt.order_by(column.desc() if order == "desc" else column.asc())
    return stmt.order_by(Task.id.asc())


def _group_key(task: Task, field: str) -> str:
    if field == "assignee":
        return task.assignee.name if task.assignee else "Unassigned"
    return str(getattr(task, field))


def task_list_response(stmt, args) -> tuple[Response, int]:
    """
    Run a filtered task query and render the standard list envelope.

    The ``tag`` filter is applied in Python since tags live in a JSON
    column.  ``group_by`` adds a ``groups`` object keyed by the group value.
    """
    tasks = list(db.session.scalars(stmt))
    tag = args.get("tag")
    if tag:
        tasks = [task for task in tasks if tag in (task.tags or [])]

    page = max(args.get("page", 1, type=int) or 1, 1)
    per_page = args.get("per_page", DEFAULT_PER_PAGE, type=int) or DEFAULT_PER_PAGE
    per_page = max(1, min(per_page, MAX_PER_PAGE))
    total = len(tasks)
    page_items = tasks[(page - 1) * per_page : page * per_page]

    body: dict[str, Any] = {
        "tasks": [task.to_dict() for task in page_items],
        "count": len(page_items),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }

    group_by = args.get("group_by")
    if group_by:
        if group_by not in GROUPABLE_TASK_FIELDS:
            return json_error(
                f"Invalid group_by. Must be one of: {list(GROUPABLE_TASK_FIELDS)}", 400
            )
        groups: dict[str, list[dict[str, Any]]] = {}
        for task in page_items:
            groups.setdefault(_group_key(task, group_by), []).append(task.to_dict())
        body["groups"] = groups
    return jsonify(body), 200


def member_project_ids(user_id: int) -> list[int]:
    return list(
        db.session.scalars(
            select(ProjectMember.project_id).where(ProjectMember.user_id == user_id)
        )
    )


def is_admin() -> bool:
    return g.role == UserRole.ADMIN.value


# =====================================================================
# Account Validation
# =====================================================================

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def validate_email(email: str) -> str | None:
    if len(email) > 255:
        return "email must be 255 characters or less"
    if not EMAIL_PATTERN.match(email):
        return "Invalid email format"
    return None


def validate_password(password: Any) -> str | None:
    """At least eight characters with at least one letter and one digit."""
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if not any(char.isalpha() for char in password) or not any(
        char.isdigit() for char in password
    ):
        return "Password must contain at least one letter and one digit"
    return None


def validate_role(role: Any) -> str | None:
    valid_roles = [r.value for r in UserRole]
    if role not in valid_roles:
        return f"Invalid role. Must be one of: {valid_roles}"
    return None


TEMPORARY_PASSWORD_LENGTH = 12


def generate_temporary_password() -> str:
    """Random one-time password that satisfies ``validate_password``."""
    alphabet = string.ascii_letters + string.digits
    while True:
        candidate = "".join(
            secrets.choice(alphabet) for _ in range(TEMPORARY_PASSWORD_LENGTH)
        )
        if validate_password(candidate) is None:
            return candidate


# =====================================================================
# CSV Exports
# =====================================================================


def csv_response(rows: list[dict[str, Any]], columns: tuple[str, ...], filename: str) -> Response:
    """Render *rows* as a CSV attachment with the given column order."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    writer.writerows(rows)
    return Response(
        buffer.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# =====================================================================
# Stored Files
# =====================================================================


def commit_with_stored_file(path: Path, content: bytes) -> None:
    """
    Write *content* to *path*, then commit the session.

    If the commit fails the session is rolled back, the file is removed
    again and the error re-raised.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        path.unlink(missing_ok=True)
        raise


def remove_stored_files(paths: list[Path], directory: Path | None = None) -> None:
    """Delete files whose rows are already committed away; *directory* goes too once empty."""
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove stored file %s: %s", path, exc)
    if directory is not None and directory.is_dir() and not any(directory.iterdir()):
        directory.rmdir()
