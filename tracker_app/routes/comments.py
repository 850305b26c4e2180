"""
Task comment API endpoints.

Endpoints:
    GET    /api/tasks/<id>/comments                       - List comments
    POST   /api/tasks/<id>/comments                       - Add a comment
    PUT    /api/tasks/<id>/comments/<cid>                 - Edit own comment
    DELETE /api/tasks/<id>/comments/<cid>                 - Delete a comment
    POST   /api/tasks/<id>/comments/<cid>/reactions       - Add a reaction
    DELETE /api/tasks/<id>/comments/<cid>/reactions       - Remove a reaction
    POST   /api/tasks/<id>/comments/<cid>/pin             - Toggle pinning

Mentions use the ``@[Display Name](user_id)`` markup; ids found in the body
are merged with any explicit ``mentions`` list and kept only when they
belong to the organization.
"""

from __future__ import annotations

import logging
import re

from flask import Blueprint, Response, g, jsonify
from sqlalchemy import delete, select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization
from ..models import Task, TaskComment, User, utcnow
from ..workflow import MANAGER_ROLES, ChangeType
from .common import (
    can_view_task,
    get_json_body,
    json_error,
    record_history,
    tenant_get,
    validate_required_fields,
)

logger = logging.getLogger(__name__)

comments_bp = Blueprint("task_comments", __name__)

MENTION_PATTERN = re.compile(r"@\[([^\]]+)\]\(([^)]+)\)")


def extract_mentions(body: str) -> list[int]:
    """Return the user ids referenced by ``@[Name](id)`` markup in *body*."""
    ids = []
    for _name, raw_id in MENTION_PATTERN.findall(body):
        if raw_id.strip().isdigit():
            ids.append(int(raw_id.strip()))
    return ids


def _resolve_mentions(body: str, explicit) -> list[int]:
    candidates = extract_mentions(body)
    if isinstance(explicit, list):
        candidates.extend(value for value in explicit if isinstance(value, int))
    unique = list(dict.fromkeys(candidates))
    if not unique:
        return []
    valid = set(
        db.session.scalars(
            select(User.id).where(
                User.id.in_(unique), User.organization_id == g.organization_id
            )
        )
    )
    return [user_id for user_id in unique if user_id in valid]


def _load(task_id: int, comment_id: int | None = None):
    """Load the task (and optionally one of its comments) with access checks."""
    task = tenant_get(Task, task_id)
    if task is None:
        return None, None, json_error("Task not found", 404)
    if not can_view_task(task, g.current_user):
        return None, None, json_error("Access denied", 403)
    if comment_id is None:
        return task, None, None
    comment = db.session.scalar(
        select(TaskComment).where(
            TaskComment.id == comment_id, TaskComment.task_id == task.id
        )
    )
    if comment is None:
        return None, None, json_error("Comment not found", 404)
    return task, comment, None


def _thread_levels(root: TaskComment) -> list[list[int]]:
    """Ids of *root* and its replies at every depth, one list per depth."""
    levels = [[root.id]]
    while True:
        children = list(
            db.session.scalars(
                select(TaskComment.id).where(
                    TaskComment.task_id == root.task_id,
                    TaskComment.parent_comment_id.in_(levels[-1]),
                )
            )
        )
        if not children:
            return levels
        levels.append(children)


def _emoji(data: dict) -> str | None:
    emoji = data.get("emoji")
    if not isinstance(emoji, str) or not emoji.strip() or len(emoji.strip()) > 32:
        return None
    return emoji.strip()


@comments_bp.route("/<int:task_id>/comments", methods=["GET"])
@require_auth
@require_organization
def list_comments(task_id: int) -> tuple[Response, int]:
    """Pinned comments first, then newest first."""
    task, _, error = _load(task_id)
    if error:
        return error
    comments = db.session.scalars(
        select(TaskComment)
        .where(TaskComment.task_id == task.id)
        .order_by(
            TaskComment.is_pinned.desc(),
            TaskComment.created_at.desc(),
            TaskComment.id.desc(),
        )
    ).all()
    return jsonify({"comments": [c.to_dict() for c in comments], "count": len(comments)}), 200


@comments_bp.route("/<int:task_id>/comments", methods=["POST"])
@require_auth
@require_organization
def create_comment(task_id: int) -> tuple[Response, int]:
    task, _, error = _load(task_id)
    if error:
        return error
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["body"])
    if missing:
        return json_error(missing, 400)

    parent_id = data.get("parent_comment_id")
    if parent_id is not None:
        parent = db.session.scalar(
            select(TaskComment).where(
                TaskComment.id == parent_id, TaskComment.task_id == task.id
            )
        )
        if parent is None:
            return json_error("Parent comment not found", 400)

    body = data["body"].strip()
    comment = TaskComment(
        task_id=task.id,
        author_id=g.user_id,
        body=body,
        parent_comment_id=parent_id,
        is_internal=bool(data.get("is_internal", False)),
        mentions=_resolve_mentions(body, data.get("mentions")),
    )
    db.session.add(comment)
    record_history(task, ChangeType.COMMENTED, "Comment added")
    db.session.commit()
    return jsonify({"comment": comment.to_dict()}), 201


@comments_bp.route("/<int:task_id>/comments/<int:comment_id>", methods=["PUT"])
@require_auth
@require_organization
def update_comment(task_id: int, comment_id: int) -> tuple[Response, int]:
    _, comment, error = _load(task_id, comment_id)
    if error:
        return error
    if comment.author_id != g.user_id:
        return json_error("Only the author can edit this comment", 403)
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["body"])
    if missing:
        return json_error(missing, 400)

    comment.body = data["body"].strip()
    comment.mentions = _resolve_mentions(comment.body, data.get("mentions"))
    comment.is_edited = True
    comment.last_edited_at = utcnow()
    comment.last_edited_by_id = g.user_id
    db.session.commit()
    return jsonify({"comment": comment.to_dict()}), 200


@comments_bp.route("/<int:task_id>/comments/<int:comment_id>", methods=["DELETE"])
@require_auth
@require_organization
def delete_comment(task_id: int, comment_id: int) -> tuple[Response, int]:
    _, comment, error = _load(task_id, comment_id)
    if error:
        return error
    if comment.author_id != g.user_id and g.role not in MANAGER_ROLES:
        return json_error("You do not have permission to delete this comment", 403)
    levels = _thread_levels(comment)
    for level in reversed(levels):
        db.session.execute(delete(TaskComment).where(TaskComment.id.in_(level)))
    record_audit(
        EntityType.COMMENT,
        comment_id,
        AuditAction.DELETE,
        old_values={"task_id": task_id, "reply_ids": [i for level in levels[1:] for i in level]},
    )
    db.session.commit()
    logger.info(
        "Comment %s and %s replies deleted by user_id=%s",
        comment_id,
        sum(len(level) for level in levels) - 1,
        g.user_id,
    )
    return jsonify({"message": "Comment deleted successfully"}), 200


@comments_bp.route("/<int:task_id>/comments/<int:comment_id>/reactions", methods=["POST"])
@require_auth
@require_organization
def add_reaction(task_id: int, comment_id: int) -> tuple[Response, int]:
    _, comment, error = _load(task_id, comment_id)
    if error:
        return error
    emoji = _emoji(get_json_body() or {})
    if emoji is None:
        return json_error("'emoji' is required", 400)

    reactions = {key: list(users) for key, users in (comment.reactions or {}).items()}
    users = reactions.setdefault(emoji, [])
    if g.user_id not in users:
        users.append(g.user_id)
    comment.reactions = reactions
    db.session.commit()
    return jsonify({"comment": comment.to_dict()}), 200


@comments_bp.route(
    "/<int:task_id>/comments/<int:comment_id>/reactions", methods=["DELETE"]
)
@require_auth
@require_organization
def remove_reaction(task_id: int, comment_id: int) -> tuple[Response, int]:
    _, comment, error = _load(task_id, comment_id)
    if error:
        return error
    emoji = _emoji(get_json_body() or {})
    if emoji is None:
        return json_error("'emoji' is required", 400)

    reactions = {key: list(users) for key, users in (comment.reactions or {}).items()}
    users = [user_id for user_id in reactions.get(emoji, []) if user_id != g.user_id]
    if users:
        reactions[emoji] = users
    else:
        reactions.pop(emoji, None)
    comment.reactions = reactions
    db.session.commit()
    return jsonify({"comment": comment.to_dict()}), 200


@comments_bp.route("/<int:task_id>/comments/<int:comment_id>/pin", methods=["POST"])
@require_auth
@require_organization
def toggle_pin(task_id: int, comment_id: int) -> tuple[Response, int]:
    task, comment, error = _load(task_id, comment_id)
    if error:
        return error
    if g.role not in MANAGER_ROLES and task.created_by_id != g.user_id:
        return json_error("Only managers or the task creator can pin comments", 403)
    comment.is_pinned = not comment.is_pinned
    db.session.commit()
    return jsonify({"comment": comment.to_dict()}), 200
