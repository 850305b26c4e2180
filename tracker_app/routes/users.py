"""
User management API endpoints.

Endpoints:
    GET    /api/users                                 - List users of the tenant
    POST   /api/users                                 - Create a user (admin)
    GET    /api/users/<id>                            - Retrieve a user
    PUT    /api/users/<id>                            - Update a user (admin)
    PATCH  /api/users/<id>/role                       - Change role (admin)
    DELETE /api/users/<id>                            - Deactivate a user (admin)
    POST   /api/users/<id>/projects/<project_id>      - Assign to project
    DELETE /api/users/<id>/projects/<project_id>      - Unassign from project
    GET    /api/users/me/preferences                  - Own UI preferences
    PUT    /api/users/me/preferences                  - Merge UI preferences
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import or_, select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..models import Project, ProjectMember, User
from ..workflow import MANAGER_ROLES, UserRole
from .common import (
    add_project_member,
    generate_temporary_password,
    get_json_body,
    json_error,
    parse_bool,
    tenant_get,
    tenant_user,
    validate_email,
    validate_password,
    validate_required_fields,
    validate_role,
)

logger = logging.getLogger(__name__)

users_bp = Blueprint("users", __name__)


@users_bp.route("", methods=["GET"])
@require_auth
@require_organization
def list_users() -> tuple[Response, int]:
    """List tenant users; filters ``role``, ``is_active`` and ``search``."""
    stmt = select(User).where(User.organization_id == g.organization_id)

    role = request.args.get("role")
    if role:
        stmt = stmt.where(User.role == role)
    is_active = request.args.get("is_active")
    if is_active is not None:
        stmt = stmt.where(User.is_active.is_(parse_bool(is_active)))
    search = (request.args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    users = db.session.scalars(stmt.order_by(User.name)).all()
    return jsonify({"users": [user.to_dict() for user in users], "count": len(users)}), 200


def create_tenant_user(
    data: dict[str, Any], allowed_roles: tuple[str, ...]
) -> tuple[User | None, str | None, tuple[Response, int] | None]:
    """
    Create a user in the caller's organization from request *data*.

    When no password is supplied a one-time password is generated and the
    account is flagged ``must_change_password``.  ``project_ids`` adds the
    new user to those tenant projects.

    Returns:
        ``(user, temporary_password, None)`` on success, or
        ``(None, None, error_response)``.
    """
    missing = validate_required_fields(data, ["email", "name"])
    if missing:
        return None, None, json_error(missing, 400)

    email = data["email"].strip().lower()
    error = validate_email(email)
    if error:
        return None, None, json_error(error, 400)
    role = data.get("role", UserRole.MEMBER.value)
    error = validate_role(role)
    if error:
        return None, None, json_error(error, 400)
    if role not in allowed_roles:
        return None, None, json_error(f"You cannot create users with role '{role}'", 403)

    temporary_password = None
    password = data.get("password")
    if not password:
        password = temporary_password = generate_temporary_password()
    error = validate_password(password)
    if error:
        return None, None, json_error(error, 400)

    project_ids = data.get("project_ids") or []
    if not isinstance(project_ids, list):
        return None, None, json_error("'project_ids' must be a list", 400)
    projects = []
    for project_id in project_ids:
        project = (
            tenant_get(Project, project_id)
            if isinstance(project_id, int) and not isinstance(project_id, bool)
            else None
        )
        if project is None:
            return None, None, json_error(f"Project {project_id} not found", 404)
        projects.append(project)

    if db.session.scalar(select(User).where(User.email == email)):
        return None, None, json_error("Email already exists", 409)

    user = User(
        email=email,
        name=data["name"].strip(),
        role=role,
        organization_id=g.organization_id,
        must_change_password=temporary_password is not None,
    )
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    for project in projects:
        add_project_member(project, user.id)
    return user, temporary_password, None


def created_user_response(user: User, temporary_password: str | None) -> tuple[Response, int]:
    payload: dict[str, Any] = {"user": user.to_dict()}
    if temporary_password is not None:
        payload["temporary_password"] = temporary_password
    return jsonify(payload), 201


@users_bp.route("", methods=["POST"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def create_user() -> tuple[Response, int]:
    """
    Create a user inside the admin's organization.

    Without a password the response carries the generated
    ``temporary_password``; it is not stored or shown anywhere else.
    """
    data = get_json_body() or {}
    user, temporary_password, error_response = create_tenant_user(
        data, tuple(role.value for role in UserRole)
    )
    if error_response is not None:
        return error_response
    record_audit(
        EntityType.USER,
        user.id,
        AuditAction.CREATE,
        new_values={"email": user.email, "role": user.role},
    )
    db.session.commit()
    logger.info("Admin user_id=%s created user_id=%s", g.user_id, user.id)
    return created_user_response(user, temporary_password)


@users_bp.route("/<int:user_id>", methods=["GET"])
@require_auth
@require_organization
def get_user(user_id: int) -> tuple[Response, int]:
    user = tenant_user(user_id)
    if user is None:
        return json_error("User not found", 404)
    data = user.to_dict()
    data["project_ids"] = list(
        db.session.scalars(
            select(ProjectMember.project_id).where(ProjectMember.user_id == user.id)
        )
    )
    return jsonify({"user": data}), 200


@users_bp.route("/<int:user_id>", methods=["PUT"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def update_user(user_id: int) -> tuple[Response, int]:
    user = tenant_user(user_id)
    if user is None:
        return json_error("User not found", 404)
    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)

    if "name" in data:
        if not isinstance(data["name"], str) or not data["name"].strip():
            return json_error("'name' is required", 400)
        user.name = data["name"].strip()
    if "email" in data:
        email = str(data["email"]).strip().lower()
        error = validate_email(email)
        if error:
            return json_error(error, 400)
        existing = db.session.scalar(select(User).where(User.email == email))
        if existing is not None and existing.id != user.id:
            return json_error("Email already exists", 409)
        user.email = email
    if "is_active" in data:
        if user.id == g.user_id and not parse_bool(data["is_active"]):
            return json_error("You cannot deactivate yourself", 400)
        user.is_active = parse_bool(data["is_active"])

    db.session.commit()
    return jsonify({"user": user.to_dict()}), 200


@users_bp.route("/<int:user_id>/role", methods=["PATCH"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def update_role(user_id: int) -> tuple[Response, int]:
    user = tenant_user(user_id)
    if user is None:
        return json_error("User not found", 404)
    data = get_json_body() or {}
    role = data.get("role")
    error = validate_role(role)
    if error:
        return json_error(error, 400)
    if user.id == g.user_id and role != UserRole.ADMIN.value:
        return json_error("You cannot change your own admin role", 400)

    previous = user.role
    user.role = role
    record_audit(
        EntityType.USER,
        user.id,
        AuditAction.ROLE_CHANGE,
        old_values={"role": previous},
        new_values={"role": role},
    )
    db.session.commit()
    logger.info("Role of user_id=%s changed from %s to %s", user.id, previous, role)
    return jsonify({"user": user.to_dict()}), 200


@users_bp.route("/<int:user_id>", methods=["DELETE"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def deactivate_user(user_id: int) -> tuple[Response, int]:
    user = tenant_user(user_id)
    if user is None:
        return json_error("User not found", 404)
    if user.id == g.user_id:
        return json_error("You cannot deactivate yourself", 400)
    user.is_active = False
    record_audit(EntityType.USER, user.id, AuditAction.DELETE, old_values={"is_active": True})
    db.session.commit()
    logger.info("User_id=%s deactivated by user_id=%s", user.id, g.user_id)
    return jsonify({"message": "User deactivated successfully"}), 200


@users_bp.route("/<int:user_id>/projects/<int:project_id>", methods=["POST"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def assign_project(user_id: int, project_id: int) -> tuple[Response, int]:
    user = tenant_user(user_id)
    project = tenant_get(Project, project_id)
    if user is None or project is None:
        return json_error("User or project not found", 404)
    if not add_project_member(project, user.id):
        return json_error("User is already assigned to this project", 400)
    db.session.commit()
    return jsonify({"message": "User assigned to project"}), 201


@users_bp.route("/<int:user_id>/projects/<int:project_id>", methods=["DELETE"])
@require_auth
@require_organization
@require_roles(*MANAGER_ROLES)
def unassign_project(user_id: int, project_id: int) -> tuple[Response, int]:
    project = tenant_get(Project, project_id)
    if project is None:
        return json_error("Project not found", 404)
    membership = db.session.scalar(
        select(ProjectMember).where(
            ProjectMember.project_id == project.id, ProjectMember.user_id == user_id
        )
    )
    if membership is None:
        return json_error("User is not assigned to this project", 404)
    db.session.delete(membership)
    db.session.commit()
    return jsonify({"message": "User removed from project"}), 200


@users_bp.route("/me/preferences", methods=["GET"])
@require_auth
def get_preferences() -> tuple[Response, int]:
    return jsonify({"preferences": g.current_user.preferences or {}}), 200


@users_bp.route("/me/preferences", methods=["PUT"])
@require_auth
def update_preferences() -> tuple[Response, int]:
    data = get_json_body()
    if data is None:
        return json_error("Request body must be a JSON object", 400)
    user: User = g.current_user
    user.preferences = {**(user.preferences or {}), **data}
    db.session.commit()
    return jsonify({"preferences": user.preferences}), 200
