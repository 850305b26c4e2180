"""
Organization (tenant) API endpoints.

Endpoints:
    GET  /api/organization                  - Current organization
    PUT  /api/organization                  - Update settings (admin)
    GET  /api/organization/users/count      - Number of members
    GET  /api/organization/users            - Members of the organization
    POST /api/organization/logo             - Upload a logo (admin)
    GET  /api/organization/logo/<filename>  - Serve a stored logo (public)
"""

from __future__ import annotations

import logging
import secrets
from pathlib import Path

from flask import Blueprint, Response, current_app, g, jsonify, request, send_from_directory
from sqlalchemy import func, select
from werkzeug.utils import secure_filename

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..models import Organization, User
from ..workflow import UserRole
from .common import (
    commit_with_stored_file,
    get_json_body,
    json_error,
    remove_stored_files,
    validate_required_fields,
)

logger = logging.getLogger(__name__)

organization_bp = Blueprint("organization", __name__)

LOGO_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "svg", "webp"})
LOGO_URL_PREFIX = "/api/organization/logo/"
UPDATABLE_FIELDS = ("description", "industry", "size", "timezone", "currency")


def _logo_dir() -> Path:
    return Path(current_app.config["UPLOAD_FOLDER"]) / "logos"


@organization_bp.route("", methods=["GET"])
@require_auth
def get_organization() -> tuple[Response, int]:
    if g.organization_id is None:
        return json_error("Organization not found", 404)
    organization = db.session.get(Organization, g.organization_id)
    if organization is None:
        return json_error("Organization not found", 404)

    data = organization.to_dict()
    creator = (
        db.session.get(User, organization.created_by_id)
        if organization.created_by_id
        else None
    )
    data["created_by_name"] = creator.name if creator else None
    return jsonify({"organization": data}), 200


@organization_bp.route("", methods=["PUT"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def update_organization() -> tuple[Response, int]:
    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)
    missing = validate_required_fields(data, ["name"])
    if missing:
        return json_error(missing, 400)
    if len(data["name"].strip()) > 200:
        return json_error("name must be 200 characters or less", 400)
    if "settings" in data and not isinstance(data["settings"], dict):
        return json_error("settings must be an object", 400)

    organization = db.session.get(Organization, g.organization_id)
    organization.name = data["name"].strip()
    for field in UPDATABLE_FIELDS:
        if field in data:
            setattr(organization, field, data[field])
    if "settings" in data:
        organization.settings = {**(organization.settings or {}), **data["settings"]}
    record_audit(
        EntityType.ORGANIZATION,
        organization.id,
        AuditAction.UPDATE,
        new_values={key: data[key] for key in data if key != "settings"},
    )
    db.session.commit()
    logger.info("Organization %s updated by user_id=%s", organization.id, g.user_id)
    return jsonify({"organization": organization.to_dict()}), 200


@organization_bp.route("/users/count", methods=["GET"])
@require_auth
def count_users() -> tuple[Response, int]:
    if g.organization_id is None:
        return jsonify({"count": 0}), 200
    count = db.session.scalar(
        select(func.count(User.id)).where(User.organization_id == g.organization_id)
    )
    return jsonify({"count": count}), 200


@organization_bp.route("/users", methods=["GET"])
@require_auth
@require_organization
def list_members() -> tuple[Response, int]:
    users = db.session.scalars(
        select(User)
        .where(User.organization_id == g.organization_id)
        .order_by(User.name)
    ).all()
    return jsonify({"users": [user.to_dict() for user in users], "count": len(users)}), 200


@organization_bp.route("/logo", methods=["POST"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def upload_logo() -> tuple[Response, int]:
    """
    Store an uploaded logo image and point ``logo_url`` at it.

    Accepts multipart field ``logo``; images only, capped at
    ``MAX_LOGO_BYTES``.
    """
    upload = request.files.get("logo")
    if upload is None or not upload.filename:
        return json_error("No logo file provided", 400)

    filename = secure_filename(upload.filename)
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension not in LOGO_EXTENSIONS:
        return json_error(
            f"Invalid file type. Allowed: {', '.join(sorted(LOGO_EXTENSIONS))}", 400
        )

    content = upload.read()
    if len(content) > current_app.config["MAX_LOGO_BYTES"]:
        return json_error("File too large", 413)

    stored_name = f"org_{g.organization_id}_{secrets.token_hex(8)}.{extension}"
    organization = db.session.get(Organization, g.organization_id)
    previous_url = organization.logo_url or ""
    organization.logo_url = f"{LOGO_URL_PREFIX}{stored_name}"
    record_audit(
        EntityType.ORGANIZATION,
        organization.id,
        AuditAction.UPDATE,
        old_values={"logo_url": previous_url or None},
        new_values={"logo_url": organization.logo_url},
    )
    commit_with_stored_file(_logo_dir() / stored_name, content)
    if previous_url.startswith(LOGO_URL_PREFIX):
        remove_stored_files([_logo_dir() / secure_filename(previous_url[len(LOGO_URL_PREFIX):])])
    logger.info("Logo uploaded for organization %s", organization.id)
    return jsonify({"logo_url": organization.logo_url, "organization": organization.to_dict()}), 200


@organization_bp.route("/logo/<path:filename>", methods=["GET"])
def get_logo(filename: str):
    return send_from_directory(_logo_dir(), secure_filename(filename))
