"""
Task attachment API endpoints.

Endpoints:
    GET    /api/tasks/<id>/attachments                  - List attachments
    POST   /api/tasks/<id>/attachments                  - Upload a file
    GET    /api/tasks/<id>/attachments/<aid>/download   - Download a file
    DELETE /api/tasks/<id>/attachments/<aid>            - Delete a file

Files are stored on local disk under ``UPLOAD_FOLDER/tasks/<task_id>/``
with a random stored name; the original name, size and SHA-256 digest are
kept in ``TaskAttachment``.
"""

from __future__ import annotations

import hashlib
import logging
import secrets

from flask import Blueprint, Response, current_app, g, jsonify, request, send_file
from sqlalchemy import select
from werkzeug.utils import secure_filename

from .. import db
from ..auth import require_auth, require_organization
from ..models import DOCUMENT_EXTENSIONS, IMAGE_EXTENSIONS, Task, TaskAttachment, utcnow
from ..workflow import MANAGER_ROLES, ChangeType
from .common import (
    can_view_task,
    commit_with_stored_file,
    json_error,
    record_history,
    remove_stored_files,
    tenant_get,
)

logger = logging.getLogger(__name__)

attachments_bp = Blueprint("task_attachments", __name__)

ALLOWED_EXTENSIONS = IMAGE_EXTENSIONS | DOCUMENT_EXTENSIONS | {"zip", "rar"}


def _load(task_id: int, attachment_id: int | None = None):
    task = tenant_get(Task, task_id)
    if task is None:
        return None, None, json_error("Task not found", 404)
    if not can_view_task(task, g.current_user):
        return None, None, json_error("Access denied", 403)
    if attachment_id is None:
        return task, None, None
    attachment = db.session.scalar(
        select(TaskAttachment).where(
            TaskAttachment.id == attachment_id, TaskAttachment.task_id == task.id
        )
    )
    if attachment is None:
        return None, None, json_error("Attachment not found", 404)
    return task, attachment, None


@attachments_bp.route("/<int:task_id>/attachments", methods=["GET"])
@require_auth
@require_organization
def list_attachments(task_id: int) -> tuple[Response, int]:
    task, _, error = _load(task_id)
    if error:
        return error
    attachments = db.session.scalars(
        select(TaskAttachment)
        .where(TaskAttachment.task_id == task.id)
        .order_by(TaskAttachment.created_at.desc(), TaskAttachment.id.desc())
    ).all()
    return (
        jsonify(
            {
                "attachments": [a.to_dict() for a in attachments],
                "count": len(attachments),
            }
        ),
        200,
    )


@attachments_bp.route("/<int:task_id>/attachments", methods=["POST"])
@require_auth
@require_organization
def upload_attachment(task_id: int) -> tuple[Response, int]:
    """
    Upload multipart field ``file`` (optional ``description``).

    Returns:
        201 with the attachment metadata, 400 for a missing file or a
        disallowed extension, 413 when larger than ``MAX_ATTACHMENT_BYTES``.
    """
    task, _, error = _load(task_id)
    if error:
        return error

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return json_error("No file provided", 400)
    file_name = secure_filename(upload.filename) or "upload"
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    if extension not in ALLOWED_EXTENSIONS:
        return json_error(
            f"Invalid file type. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}", 400
        )

    content = upload.read()
    if len(content) > current_app.config["MAX_ATTACHMENT_BYTES"]:
        return json_error("File too large", 413)

    attachment = TaskAttachment(
        task_id=task.id,
        uploaded_by_id=g.user_id,
        file_name=file_name,
        stored_name=f"{secrets.token_hex(16)}.{extension}",
        file_size=len(content),
        file_type=extension,
        description=request.form.get("description"),
        file_hash=hashlib.sha256(content).hexdigest(),
    )
    db.session.add(attachment)
    record_history(
        task,
        ChangeType.FILE_UPLOADED,
        f"File '{file_name}' uploaded",
        [{"field": "attachments", "old_value": None, "new_value": file_name}],
    )
    commit_with_stored_file(
        attachment.storage_path(current_app.config["UPLOAD_FOLDER"]), content
    )
    logger.info(
        "Attachment %s (%s bytes) uploaded to task %s", attachment.id, len(content), task.id
    )
    return jsonify({"attachment": attachment.to_dict()}), 201


@attachments_bp.route(
    "/<int:task_id>/attachments/<int:attachment_id>/download", methods=["GET"]
)
@require_auth
@require_organization
def download_attachment(task_id: int, attachment_id: int):
    _, attachment, error = _load(task_id, attachment_id)
    if error:
        return error
    path = attachment.storage_path(current_app.config["UPLOAD_FOLDER"])
    if not path.is_file():
        logger.error("Attachment %s missing on disk at %s", attachment.id, path)
        return json_error("File not found", 404)

    attachment.download_count = (attachment.download_count or 0) + 1
    attachment.last_downloaded_at = utcnow()
    db.session.commit()
    return send_file(path, as_attachment=True, download_name=attachment.file_name)


@attachments_bp.route("/<int:task_id>/attachments/<int:attachment_id>", methods=["DELETE"])
@require_auth
@require_organization
def delete_attachment(task_id: int, attachment_id: int) -> tuple[Response, int]:
    _, attachment, error = _load(task_id, attachment_id)
    if error:
        return error
    if attachment.uploaded_by_id != g.user_id and g.role not in MANAGER_ROLES:
        return json_error("You do not have permission to delete this attachment", 403)

    path = attachment.storage_path(current_app.config["UPLOAD_FOLDER"])
    db.session.delete(attachment)
    db.session.commit()
    remove_stored_files([path])
    return jsonify({"message": "Attachment deleted successfully"}), 200
