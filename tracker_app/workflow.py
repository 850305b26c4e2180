"""
Status, Priority and Approval Workflow Rules.

The UI, legacy clients and the database historically used different
vocabularies for the same task state ("Working on it", ``in_progress``,
"In Progress").  This module is the single place where those vocabularies
are reconciled with the values actually persisted, and where the allowed
workflow transitions are defined.

Everything here is pure: no database or request access, so the rules can
be unit-tested in isolation and reused by every blueprint.

Key Concepts Demonstrated:
- ``str, Enum`` enumerations for JSON-friendly persisted values
- Alias tables for tolerant input normalisation
- Explicit state machines for status and approval transitions
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from enum import Enum


class WorkflowError(ValueError):
    """Raised when a status or approval transition is not allowed."""


class UserRole(str, Enum):
    """Roles a user can hold inside an organization."""

    ADMIN = "admin"
    PMO = "pmo"
    PROJECT_MANAGER = "project_manager"
    MEMBER = "member"


# Roles allowed to manage work items of other users.
MANAGER_ROLES = (UserRole.ADMIN.value, UserRole.PROJECT_MANAGER.value)
# Roles with read access to every work item of the organization.
OVERSIGHT_ROLES = (
    UserRole.ADMIN.value,
    UserRole.PROJECT_MANAGER.value,
    UserRole.PMO.value,
)


class TaskPriority(str, Enum):
    """Board task priority, stored with the capitalised board labels."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class ActivityPriority(str, Enum):
    """Activity priority, stored lower-case."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalState(str, Enum):
    """Lifecycle of an activity through the PM approval process."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    CLOSED = "closed"
    REOPENED = "reopened"
    REJECTED = "rejected"


class StatusType(str, Enum):
    """Kinds of status catalogs an organization maintains."""

    TASK = "task"
    ACTIVITY = "activity"
    APPROVAL = "approval"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    COMPLETED = "completed"


class ChangeType(str, Enum):
    """Kinds of entries recorded in a task's history."""

    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    PRIORITY_CHANGED = "priority_changed"
    DELETED = "deleted"
    APPROVED = "approved"
    REJECTED = "rejected"
    FILE_UPLOADED = "file_uploaded"
    COMMENTED = "commented"


class ReviewState(str, Enum):
    """State of a single approval request raised for an activity or task."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVOKED = "revoked"


class ReviewSubject(str, Enum):
    ACTIVITY = "activity"
    TASK = "task"


# (key, upper bound in hours) of the waiting-time buckets of pending requests.
AGING_BUCKETS: tuple[tuple[str, float], ...] = (
    ("less_than_24h", 24),
    ("between_24h_48h", 48),
    ("between_48h_72h", 72),
    ("more_than_72h", float("inf")),
)


def aging_bucket(hours_waiting: float) -> str:
    """Return the ``AGING_BUCKETS`` key a request waiting *hours_waiting* falls in."""
    for key, upper in AGING_BUCKETS:
        if hours_waiting < upper:
            return key
    return AGING_BUCKETS[-1][0]


# =====================================================================
# Status vocabulary
# =====================================================================

TODO = "To Do"
IN_PROGRESS = "In Progress"
IN_REVIEW = "In Review"
DONE = "Done"

DEFAULT_STATUSES = (TODO, IN_PROGRESS, IN_REVIEW, DONE)

# Keys are produced by ``_status_key`` so lookups ignore case and the
# separator style ("working on it", "working_on_it", "Working-On-It").
_STATUS_ALIASES: dict[str, str] = {
    "to_do": TODO,
    "todo": TODO,
    "assigned": TODO,
    "not_started": TODO,
    "pending": TODO,
    "in_progress": IN_PROGRESS,
    "working_on_it": IN_PROGRESS,
    "working": IN_PROGRESS,
    "stuck": IN_REVIEW,
    "blocked": IN_REVIEW,
    "in_review": IN_REVIEW,
    "review": IN_REVIEW,
    "completed": DONE,
    "done": DONE,
    "cancelled": DONE,
    "canceled": DONE,
    "closed": DONE,
}

_PROGRESS = {TODO: 0, IN_REVIEW: 25, IN_PROGRESS: 50, DONE: 100}

PRIORITY_COLORS = {
    TaskPriority.LOW.value: "#579bfc",
    TaskPriority.MEDIUM.value: "#a25ddc",
    TaskPriority.HIGH.value: "#e2445c",
    TaskPriority.URGENT.value: "#bb3354",
}

# Sort order for priority columns, least urgent first.
PRIORITY_RANK = {
    TaskPriority.LOW.value: 0,
    TaskPriority.MEDIUM.value: 1,
    TaskPriority.HIGH.value: 2,
    TaskPriority.URGENT.value: 3,
}


def _status_key(value: str) -> str:
    return re.sub(r"[\s_\-]+", "_", value.strip().lower())


def normalize_task_status(value: str) -> str:
    """
    Map any known status spelling onto the canonical stored status.

    Values that are not part of any known vocabulary are returned stripped
    but otherwise unchanged, so organization-specific custom statuses pass
    through untouched.

    Raises:
        ValueError: If *value* is not a non-empty string.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("status must be a non-empty string")
    return _STATUS_ALIASES.get(_status_key(value), value.strip())


def is_completed_status(status: str | None) -> bool:
    if not status:
        return False
    return normalize_task_status(status) == DONE


def progress_for_status(status: str | None) -> int:
    """Percent complete shown on member dashboards for a status."""
    if not status:
        return 0
    return _PROGRESS.get(normalize_task_status(status), 0)


# =====================================================================
# Priorities
# =====================================================================


def task_priority_from(value: str) -> TaskPriority:
    """
    Parse a task priority written in any letter case.

    Raises:
        ValueError: If *value* is not one of low, medium, high, urgent.
    """
    if isinstance(value, str):
        for priority in TaskPriority:
            if priority.value.lower() == value.strip().lower():
                return priority
    valid = [p.value for p in TaskPriority]
    raise ValueError(f"Invalid priority. Must be one of: {valid}")


def activity_priority_from(value: str) -> ActivityPriority:
    if isinstance(value, str):
        try:
            return ActivityPriority(value.strip().lower())
        except ValueError:
            pass
    valid = [p.value for p in ActivityPriority]
    raise ValueError(f"Invalid priority. Must be one of: {valid}")


def task_to_activity_priority(priority: str) -> ActivityPriority:
    """Collapse the four board priorities onto the three activity levels."""
    mapping = {
        TaskPriority.LOW: ActivityPriority.LOW,
        TaskPriority.MEDIUM: ActivityPriority.MEDIUM,
        TaskPriority.HIGH: ActivityPriority.HIGH,
        TaskPriority.URGENT: ActivityPriority.HIGH,
    }
    try:
        return mapping[task_priority_from(priority)]
    except ValueError:
        return ActivityPriority.MEDIUM


def activity_to_task_priority(priority: str) -> TaskPriority:
    mapping = {
        ActivityPriority.LOW: TaskPriority.LOW,
        ActivityPriority.MEDIUM: TaskPriority.MEDIUM,
        ActivityPriority.HIGH: TaskPriority.HIGH,
    }
    try:
        return mapping[activity_priority_from(priority)]
    except ValueError:
        return TaskPriority.MEDIUM


def priority_color(priority: str) -> str:
    return PRIORITY_COLORS.get(priority, PRIORITY_COLORS[TaskPriority.MEDIUM.value])


# =====================================================================
# Board groups
# =====================================================================

DEFAULT_SECTION = "To-Do"
COMPLETED_SECTION = "Completed"

# group name -> (board section, status applied when a task enters the group)
BOARD_GROUPS: dict[str, tuple[str, str]] = {
    "todo": (DEFAULT_SECTION, IN_PROGRESS),
    "completed": (COMPLETED_SECTION, DONE),
}


def board_group_for_status(status: str | None) -> str:
    """Return the member-board lane (``todo`` / ``completed``) for a status."""
    return "completed" if is_completed_status(status) else "todo"


def section_for_status(status: str | None) -> str:
    return BOARD_GROUPS[board_group_for_status(status)][0]


def move_target(group: str) -> tuple[str, str]:
    """
    Resolve a board group into the ``(section, status)`` it implies.

    Raises:
        ValueError: If *group* is not a known board group.
    """
    key = group.strip().lower() if isinstance(group, str) else ""
    if key not in BOARD_GROUPS:
        raise ValueError(f"Invalid group. Must be one of: {sorted(BOARD_GROUPS)}")
    return BOARD_GROUPS[key]


def group_for_section(section: str) -> str | None:
    """Board group whose lane is named *section*, if any."""
    for group, (group_section, _status) in BOARD_GROUPS.items():
        if section.strip().lower() == group_section.lower():
            return group
    return None


# =====================================================================
# Transitions
# =====================================================================

_WORK_TRANSITIONS: dict[str, tuple[str, ...]] = {
    TODO: (IN_PROGRESS,),
    IN_PROGRESS: (IN_REVIEW, DONE),
    IN_REVIEW: (IN_PROGRESS, DONE),
    DONE: (),
}

DEFAULT_TRANSITIONS: dict[str, dict[str, tuple[str, ...]]] = {
    StatusType.TASK.value: _WORK_TRANSITIONS,
    StatusType.ACTIVITY.value: _WORK_TRANSITIONS,
    StatusType.APPROVAL.value: {
        ApprovalState.DRAFT.value: (ApprovalState.SUBMITTED.value,),
        ApprovalState.SUBMITTED.value: (
            ApprovalState.APPROVED.value,
            ApprovalState.REJECTED.value,
        ),
        ApprovalState.APPROVED.value: (
            ApprovalState.CLOSED.value,
            ApprovalState.REOPENED.value,
        ),
        ApprovalState.REJECTED.value: (ApprovalState.REOPENED.value,),
        ApprovalState.CLOSED.value: (ApprovalState.REOPENED.value,),
        ApprovalState.REOPENED.value: (
            ApprovalState.SUBMITTED.value,
            ApprovalState.CLOSED.value,
        ),
    },
}


def normalize_status_for_type(status_type: str, value: str) -> str:
    """Normalise *value* using the vocabulary of *status_type*."""
    if StatusType(status_type) is StatusType.APPROVAL:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("status must be a non-empty string")
        return value.strip().lower()
    return normalize_task_status(value)


def is_valid_transition(
    status_type: str,
    from_status: str,
    to_status: str,
    active_statuses: list[str] | None = None,
) -> bool:
    """
    Decide whether moving from *from_status* to *to_status* is allowed.

    Both ends must belong to *active_statuses* when a catalog is supplied.
    Staying on the same status is always allowed.  Between two default
    statuses the ``DEFAULT_TRANSITIONS`` graph applies; any move involving a
    custom, organization-defined status is permitted.

    Raises:
        ValueError: If *status_type* is unknown or a status is blank.
    """
    kind = StatusType(status_type).value
    source = normalize_status_for_type(kind, from_status)
    target = normalize_status_for_type(kind, to_status)

    if active_statuses is not None:
        active = {normalize_status_for_type(kind, s) for s in active_statuses}
        if source not in active or target not in active:
            return False

    if source == target:
        return True

    graph = DEFAULT_TRANSITIONS[kind]
    if source in graph and target in graph:
        return target in graph[source]
    return True


def next_statuses(status_type: str, status: str) -> list[str]:
    graph = DEFAULT_TRANSITIONS[StatusType(status_type).value]
    return list(graph.get(normalize_status_for_type(status_type, status), ()))


# action -> (states it may start from, resulting state, error message)
APPROVAL_ACTIONS: dict[str, tuple[tuple[ApprovalState, ...], ApprovalState, str]] = {
    "submit": (
        (ApprovalState.DRAFT, ApprovalState.REOPENED),
        ApprovalState.SUBMITTED,
        "Only draft or reopened activities can be submitted",
    ),
    "approve": (
        (ApprovalState.SUBMITTED,),
        ApprovalState.APPROVED,
        "Only submitted activities can be approved",
    ),
    "reject": (
        (ApprovalState.SUBMITTED,),
        ApprovalState.REJECTED,
        "Only submitted activities can be rejected",
    ),
    "reopen": (
        (ApprovalState.APPROVED, ApprovalState.CLOSED, ApprovalState.REJECTED),
        ApprovalState.REOPENED,
        "Only approved, closed or rejected activities can be reopened",
    ),
    "close": (
        (ApprovalState.APPROVED, ApprovalState.REOPENED),
        ApprovalState.CLOSED,
        "Only approved or reopened activities can be closed",
    ),
}

EDITABLE_APPROVAL_STATES = (ApprovalState.DRAFT.value, ApprovalState.REOPENED.value)


def next_approval_state(current: str, action: str) -> ApprovalState:
    """
    Apply an approval *action* to the *current* state.

    Raises:
        WorkflowError: If the action is unknown or not allowed from
            *current*.
    """
    if action not in APPROVAL_ACTIONS:
        raise WorkflowError(f"Unknown approval action '{action}'")
    allowed_from, result, message = APPROVAL_ACTIONS[action]
    if current not in {state.value for state in allowed_from}:
        raise WorkflowError(message)
    return result


# =====================================================================
# Defaults and identifiers
# =====================================================================

# (type, name, color, order_index) rows seeded for every new organization.
DEFAULT_STATUS_CATALOG: tuple[tuple[str, str, str, int], ...] = (
    (StatusType.TASK.value, TODO, "#6B7280", 1),
    (StatusType.TASK.value, IN_PROGRESS, "#3B82F6", 2),
    (StatusType.TASK.value, IN_REVIEW, "#F59E0B", 3),
    (StatusType.TASK.value, DONE, "#10B981", 4),
    (StatusType.ACTIVITY.value, TODO, "#6B7280", 1),
    (StatusType.ACTIVITY.value, IN_PROGRESS, "#3B82F6", 2),
    (StatusType.ACTIVITY.value, IN_REVIEW, "#F59E0B", 3),
    (StatusType.ACTIVITY.value, DONE, "#10B981", 4),
    (StatusType.APPROVAL.value, ApprovalState.DRAFT.value, "#6B7280", 1),
    (StatusType.APPROVAL.value, ApprovalState.SUBMITTED.value, "#F59E0B", 2),
    (StatusType.APPROVAL.value, ApprovalState.APPROVED.value, "#10B981", 3),
    (StatusType.APPROVAL.value, ApprovalState.REJECTED.value, "#EF4444", 4),
    (StatusType.APPROVAL.value, ApprovalState.REOPENED.value, "#3B82F6", 5),
    (StatusType.APPROVAL.value, ApprovalState.CLOSED.value, "#808080", 6),
)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_ticket_number(now: datetime | None = None) -> str:
    """Build an ``ACT-<time>-<random>`` ticket number for a new activity."""
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"ACT-{_to_base36(millis)}-{suffix}".upper()
