"""
Sign-off decisions shared by the task, activity and approvals endpoints.

Each helper changes the reviewed row, settles its pending review request
and stages history and audit entries; committing is left to the caller.
``aging_summary`` backs both aging reports.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from flask import g

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..models import Activity, ApprovalRequest, Comment, Task, utcnow
from ..workflow import (
    AGING_BUCKETS,
    DONE,
    IN_PROGRESS,
    ApprovalState,
    ChangeType,
    ReviewState,
    ReviewSubject,
    aging_bucket,
    next_approval_state,
)
from .common import close_review, open_review, record_history, set_task_status

logger = logging.getLogger(__name__)

_ACTIVITY_AUDIT_ACTIONS = {
    "submit": AuditAction.SUBMIT,
    "approve": AuditAction.APPROVE,
    "reject": AuditAction.REJECT,
    "reopen": AuditAction.UPDATE,
    "close": AuditAction.UPDATE,
}


def sign_off_task(task: Task, note: str | None = None) -> None:
    task.is_approved = True
    task.approved_by_id = g.user_id
    task.approved_at = utcnow()
    close_review(ReviewSubject.TASK, task.id, ReviewState.APPROVED, note)
    record_history(
        task,
        ChangeType.APPROVED,
        note or "Task approved",
        [{"field": "is_approved", "old_value": False, "new_value": True}],
    )
    record_audit(EntityType.TASK, task.id, AuditAction.APPROVE, new_values={"note": note})
    logger.info("Task %s approved by user_id=%s", task.id, g.user_id)


def send_back_task(task: Task, reason: str) -> None:
    """Withdraw approval and return finished work to ``In Progress``."""
    close_review(ReviewSubject.TASK, task.id, ReviewState.REJECTED, reason)
    changes = []
    if task.is_approved:
        changes.append({"field": "is_approved", "old_value": True, "new_value": False})
    task.is_approved = False
    task.approved_by_id = None
    task.approved_at = None
    if task.status == DONE:
        changes.extend(set_task_status(task, IN_PROGRESS))
    record_history(task, ChangeType.REJECTED, reason, changes)
    record_audit(EntityType.TASK, task.id, AuditAction.REJECT, new_values={"reason": reason})
    logger.info("Task %s rejected by user_id=%s", task.id, g.user_id)


def apply_activity_action(
    activity: Activity, action: str, comment: str | None = None
) -> ApprovalState:
    """
    Move *activity* through the approval lifecycle.

    A rejection stores *comment* as an activity comment.

    Raises:
        WorkflowError: If *action* is not allowed from the current state.
    """
    new_state = next_approval_state(activity.approval_state, action)
    previous = activity.approval_state

    activity.approval_state = new_state.value
    activity.updated_by_id = g.user_id
    if new_state is ApprovalState.APPROVED:
        activity.approved_by_id = g.user_id
        activity.approved_at = utcnow()
    elif new_state in (ApprovalState.REJECTED, ApprovalState.REOPENED):
        activity.approved_by_id = None
        activity.approved_at = None

    if new_state is ApprovalState.SUBMITTED:
        open_review(ReviewSubject.ACTIVITY, activity)
    elif new_state is ApprovalState.APPROVED:
        close_review(ReviewSubject.ACTIVITY, activity.id, ReviewState.APPROVED, comment)
    elif new_state is ApprovalState.REJECTED:
        db.session.add(Comment(activity_id=activity.id, author_id=g.user_id, body=comment))
        close_review(ReviewSubject.ACTIVITY, activity.id, ReviewState.REJECTED, comment)

    record_audit(
        EntityType.ACTIVITY,
        activity.id,
        _ACTIVITY_AUDIT_ACTIONS[action],
        old_values={"approval_state": previous},
        new_values={"approval_state": new_state.value},
    )
    logger.info(
        "Activity %s %s -> %s by user_id=%s",
        activity.ticket_number,
        previous,
        new_state.value,
        g.user_id,
    )
    return new_state


def aging_summary(pending: list[ApprovalRequest], now: datetime | None = None) -> dict[str, Any]:
    """
    Summarise how long *pending* review requests have been waiting.

    Requests are counted per ``AGING_BUCKETS`` range.  ``bottlenecks``
    ranks approvers by pending count; requests without an approver share
    ``approver_id: null``.
    """
    now = now or utcnow()
    buckets = {name: 0 for name, _ in AGING_BUCKETS}
    waits_by_approver: dict[int | None, list[float]] = defaultdict(list)
    names: dict[int | None, str] = {None: "Unassigned"}
    total_hours = 0.0
    for item in pending:
        hours = item.hours_waiting(now)
        total_hours += hours
        buckets[aging_bucket(hours)] += 1
        waits_by_approver[item.approver_id].append(hours)
        if item.approver is not None:
            names[item.approver_id] = item.approver.name

    bottlenecks = sorted(
        (
            {
                "approver_id": approver_id,
                "approver_name": names[approver_id],
                "pending_count": len(waits),
                "average_wait_hours": round(sum(waits) / len(waits), 1),
                "oldest_wait_hours": round(max(waits), 1),
            }
            for approver_id, waits in waits_by_approver.items()
        ),
        key=lambda row: (-row["pending_count"], -row["oldest_wait_hours"]),
    )
    return {
        "total_pending": len(pending),
        "average_wait_hours": round(total_hours / len(pending), 1) if pending else 0,
        "by_age": buckets,
        "bottlenecks": bottlenecks,
    }
