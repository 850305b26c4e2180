"""
Approval request API endpoints.

Endpoints:
    GET  /api/approvals                    - Requests visible to the caller
    GET  /api/approvals/pending            - Pending requests the caller can decide (admin/PM)
    GET  /api/approvals/my-requests        - Requests raised by the caller
    GET  /api/approvals/stats              - Counts and turnaround (admin/PM/PMO)
    GET  /api/approvals/aging-report       - Waiting time of pending requests (admin/PM/PMO)
    GET  /api/approvals/<id>               - Retrieve a request
    POST /api/approvals/<id>/approve       - Approve the reviewed item (admin/PM)
    POST /api/approvals/<id>/reject        - Reject with ``comments`` (admin/PM)
    PUT  /api/approvals/<id>/reassign      - Hand a request to another approver (admin/PM)
    GET  /api/approvals/activity/<id>      - Review history of an activity
    GET  /api/approvals/task/<id>          - Review history of a task
    POST /api/approvals/bulk-approve       - Approve several requests
    POST /api/approvals/bulk-reject        - Reject several requests with one comment

Requests are opened when an activity is submitted or a task reaches a
completed status unapproved.  Deciding one here has the same effect as the
approve/reject endpoints of the reviewed activity or task.

Key Concepts Demonstrated:
- One decision path shared by single and bulk endpoints
- Per-item outcomes for bulk operations
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import or_, select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..models import Activity, ApprovalRequest, Task, utcnow
from ..workflow import (
    MANAGER_ROLES,
    OVERSIGHT_ROLES,
    ReviewState,
    ReviewSubject,
    UserRole,
    WorkflowError,
)
from .common import (
    can_view_activity,
    can_view_task,
    get_json_body,
    has_oversight,
    json_error,
    tenant_get,
    tenant_user,
)
from .review import aging_summary, apply_activity_action, send_back_task, sign_off_task

logger = logging.getLogger(__name__)

approvals_bp = Blueprint("approvals", __name__)

BULK_LIMIT = 100


class DecisionError(Exception):
    """A request that cannot be decided; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# =====================================================================
# Helper Functions
# =====================================================================


def _tenant_requests():
    return select(ApprovalRequest).where(ApprovalRequest.organization_id == g.organization_id)


def _listing(stmt) -> tuple[Response, int]:
    state = request.args.get("state")
    if state:
        stmt = stmt.where(ApprovalRequest.state == state)
    entity_type = request.args.get("entity_type")
    if entity_type:
        stmt = stmt.where(ApprovalRequest.entity_type == entity_type)
    requests = db.session.scalars(
        stmt.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
    ).all()
    return jsonify({"approvals": [r.to_dict() for r in requests], "count": len(requests)}), 200


def _can_view_request(review: ApprovalRequest) -> bool:
    return has_oversight() or g.user_id in (review.requested_by_id, review.approver_id)


def _reviewed_entity(review: ApprovalRequest) -> Task | Activity | None:
    model = Task if review.entity_type == ReviewSubject.TASK.value else Activity
    return tenant_get(model, review.entity_id)


def _decide(review: ApprovalRequest, approve: bool, comments: str | None) -> Task | Activity:
    """
    Approve or reject the item behind *review*.

    Every check runs before anything is changed.

    Raises:
        DecisionError: When the request is settled, assigned to someone
            else, or its item no longer accepts the decision.
    """
    if not review.is_pending:
        raise DecisionError(f"Approval request is already {review.state}", 409)
    if (
        review.approver_id is not None
        and review.approver_id != g.user_id
        and g.role != UserRole.ADMIN.value
    ):
        raise DecisionError("This request is assigned to another approver", 403)
    entity = _reviewed_entity(review)
    if entity is None:
        raise DecisionError("Reviewed item not found", 404)

    if isinstance(entity, Task):
        if approve:
            sign_off_task(entity, comments)
        else:
            send_back_task(entity, comments)
        return entity
    try:
        apply_activity_action(entity, "approve" if approve else "reject", comments)
    except WorkflowError as exc:
        raise DecisionError(str(exc), 409) from exc
    return entity


def _comments(data: dict, required: bool) -> tuple[str | None, str | None]:
    comments = data.get("comments")
    if comments is not None and not isinstance(comments, str):
        return None, "'comments' must be a string"
    comments = comments.strip() if comments else None
    if required and not comments:
        return None, "'comments' is required when rejecting"
    return comments, None


def _decision_response(review: ApprovalRequest, entity: Task | Activity) -> tuple[Response, int]:
    return (
        jsonify({"approval": review.to_dict(), review.entity_type: entity.to_dict()}),
        200,
    )


def _bulk(approve: bool) -> tuple[Response, int]:
    data = get_json_body() or {}
    ids = data.get("approval_ids")
    if (
        not isinstance(ids, list)
        or not ids
        or not all(isinstance(i, int) and not isinstance(i, bool) for i in ids)
    ):
        return json_error("'approval_ids' must be a non-empty list of ids", 400)
    if len(ids) > BULK_LIMIT:
        return json_error(f"At most {BULK_LIMIT} requests can be processed at once", 400)
    comments, message = _comments(data, required=not approve)
    if message:
        return json_error(message, 400)

    processed, failed = [], []
    for approval_id in dict.fromkeys(ids):
        review = tenant_get(ApprovalRequest, approval_id)
        if review is None:
            failed.append({"id": approval_id, "error": "Approval request not found"})
            continue
        try:
            _decide(review, approve, comments)
        except DecisionError as exc:
            failed.append({"id": approval_id, "error": exc.message})
            continue
        processed.append(approval_id)

    db.session.commit()
    logger.info(
        "Bulk %s by user_id=%s: %s processed, %s failed",
        "approval" if approve else "rejection",
        g.user_id,
        len(processed),
        len(failed),
    )
    return jsonify({"processed": processed, "failed": failed}), 200


# =====================================================================
# Listing Endpoints
# =====================================================================


@approvals_bp.route("", methods=["GET"])
@require_auth
@require_organization
def list_approvals() -> tuple[Response, int]:
    """Every request for admin/PM/PMO; others see requests they raised or must decide."""
    stmt = _tenant_requests()
    if not has_oversight():
        stmt = stmt.where(
            or_(
                ApprovalRequest.requested_by_id == g.user_id,
                ApprovalRequest.approver_id == g.user_id,
            )
        )
    return _listing(stmt)


@approvals_bp.route("/pending", methods=["GET"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def pending_approvals() -> tuple[Response, int]:
    stmt = _tenant_requests().where(ApprovalRequest.state == ReviewState.PENDING.value)
    if g.role != UserRole.ADMIN.value:
        stmt = stmt.where(
            or_(ApprovalRequest.approver_id == g.user_id, ApprovalRequest.approver_id.is_(None))
        )
    requests = db.session.scalars(
        stmt.order_by(ApprovalRequest.created_at.asc(), ApprovalRequest.id.asc())
    ).all()
    now = utcnow()
    items = []
    for review in requests:
        item = review.to_dict()
        item["hours_waiting"] = round(review.hours_waiting(now), 1)
        items.append(item)
    return jsonify({"approvals": items, "count": len(items)}), 200


@approvals_bp.route("/my-requests", methods=["GET"])
@require_auth
@require_organization
def my_requests() -> tuple[Response, int]:
    return _listing(_tenant_requests().where(ApprovalRequest.requested_by_id == g.user_id))


@approvals_bp.route("/stats", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def approval_stats() -> tuple[Response, int]:
    """
    Counts per state and per item type, plus the average number of hours
    between opening and deciding a request.
    """
    requests = db.session.scalars(_tenant_requests()).all()
    by_state = {state.value: 0 for state in ReviewState}
    by_entity_type = {subject.value: 0 for subject in ReviewSubject}
    turnaround = []
    for review in requests:
        by_state[review.state] = by_state.get(review.state, 0) + 1
        by_entity_type[review.entity_type] = by_entity_type.get(review.entity_type, 0) + 1
        if review.processed_at is not None and review.state in (
            ReviewState.APPROVED.value,
            ReviewState.REJECTED.value,
        ):
            turnaround.append(review.hours_waiting(review.processed_at))

    decided = by_state[ReviewState.APPROVED.value] + by_state[ReviewState.REJECTED.value]
    return (
        jsonify(
            {
                "total": len(requests),
                "by_state": by_state,
                "by_entity_type": by_entity_type,
                "approval_rate": (
                    round(by_state[ReviewState.APPROVED.value] * 100 / decided, 1)
                    if decided
                    else 0
                ),
                "average_turnaround_hours": (
                    round(sum(turnaround) / len(turnaround), 1) if turnaround else 0
                ),
            }
        ),
        200,
    )


@approvals_bp.route("/aging-report", methods=["GET"])
@require_auth
@require_organization
@require_roles(*OVERSIGHT_ROLES)
def aging_report() -> tuple[Response, int]:
    pending = db.session.scalars(
        _tenant_requests().where(ApprovalRequest.state == ReviewState.PENDING.value)
    ).all()
    return jsonify(aging_summary(pending)), 200


@approvals_bp.route("/activity/<int:activity_id>", methods=["GET"])
@require_auth
@require_organization
def activity_approvals(activity_id: int) -> tuple[Response, int]:
    activity = tenant_get(Activity, activity_id)
    if activity is None:
        return json_error("Activity not found", 404)
    if not can_view_activity(activity, g.current_user):
        return json_error("Access denied", 403)
    return _listing(
        _tenant_requests().where(
            ApprovalRequest.entity_type == ReviewSubject.ACTIVITY.value,
            ApprovalRequest.entity_id == activity.id,
        )
    )


@approvals_bp.route("/task/<int:task_id>", methods=["GET"])
@require_auth
@require_organization
def task_approvals(task_id: int) -> tuple[Response, int]:
    task = tenant_get(Task, task_id)
    if task is None:
        return json_error("Task not found", 404)
    if not can_view_task(task, g.current_user):
        return json_error("Access denied", 403)
    return _listing(
        _tenant_requests().where(
            ApprovalRequest.entity_type == ReviewSubject.TASK.value,
            ApprovalRequest.entity_id == task.id,
        )
    )


# =====================================================================
# Single Request Endpoints
# =====================================================================


@approvals_bp.route("/<int:approval_id>", methods=["GET"])
@require_auth
@require_organization
def get_approval(approval_id: int) -> tuple[Response, int]:
    review = tenant_get(ApprovalRequest, approval_id)
    if review is None:
        return json_error("Approval request not found", 404)
    if not _can_view_request(review):
        return json_error("Access denied", 403)
    data = review.to_dict()
    if review.is_pending:
        data["hours_waiting"] = round(review.hours_waiting(), 1)
    return jsonify({"approval": data}), 200


@approvals_bp.route("/<int:approval_id>/approve", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def approve_request(approval_id: int) -> tuple[Response, int]:
    review = tenant_get(ApprovalRequest, approval_id)
    if review is None:
        return json_error("Approval request not found", 404)
    comments, message = _comments(get_json_body() or {}, required=False)
    if message:
        return json_error(message, 400)
    try:
        entity = _decide(review, True, comments)
    except DecisionError as exc:
        return json_error(exc.message, exc.status_code)
    db.session.commit()
    return _decision_response(review, entity)


@approvals_bp.route("/<int:approval_id>/reject", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def reject_request(approval_id: int) -> tuple[Response, int]:
    review = tenant_get(ApprovalRequest, approval_id)
    if review is None:
        return json_error("Approval request not found", 404)
    comments, message = _comments(get_json_body() or {}, required=True)
    if message:
        return json_error(message, 400)
    try:
        entity = _decide(review, False, comments)
    except DecisionError as exc:
        return json_error(exc.message, exc.status_code)
    db.session.commit()
    return _decision_response(review, entity)


@approvals_bp.route("/<int:approval_id>/reassign", methods=["PUT"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def reassign_request(approval_id: int) -> tuple[Response, int]:
    """Body: ``approver_id`` of an active admin or project manager of the tenant."""
    review = tenant_get(ApprovalRequest, approval_id)
    if review is None:
        return json_error("Approval request not found", 404)
    if not review.is_pending:
        return json_error(f"Approval request is already {review.state}", 409)

    data = get_json_body() or {}
    approver = tenant_user(data.get("approver_id"))
    if approver is None:
        return json_error("Approver not found", 404)
    if not approver.is_active or approver.role not in MANAGER_ROLES:
        return json_error("Approver must be an active admin or project manager", 400)

    previous = review.approver_id
    review.approver_id = approver.id
    record_audit(
        EntityType.APPROVAL,
        review.id,
        AuditAction.REASSIGN,
        old_values={"approver_id": previous},
        new_values={"approver_id": approver.id},
    )
    db.session.commit()
    logger.info(
        "Approval request %s reassigned from %s to %s by user_id=%s",
        review.id,
        previous,
        approver.id,
        g.user_id,
    )
    return jsonify({"approval": review.to_dict()}), 200


@approvals_bp.route("/bulk-approve", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def bulk_approve() -> tuple[Response, int]:
    """Body: ``approval_ids`` and optional ``comments``; outcome reported per id."""
    return _bulk(approve=True)


@approvals_bp.route("/bulk-reject", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def bulk_reject() -> tuple[Response, int]:
    return _bulk(approve=False)
