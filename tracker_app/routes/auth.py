"""
Authentication API endpoints.

Endpoints:
    POST /api/auth/register             - Create a new user account
    POST /api/auth/login                - Authenticate and receive a JWT
    GET  /api/auth/profile              - Current user and organization
    POST /api/auth/change-password      - Change own password
    POST /api/auth/create-organization  - Create a tenant and become its admin
    POST /api/auth/refresh              - Exchange a valid token for a fresh one
    POST /api/auth/logout               - Record the end of a session
    POST /api/auth/invite               - Add a user to the tenant (admin/PM)

Key Concepts Demonstrated:
- Werkzeug password hashing
- RS256 JWT issuance
- Input validation before database access
- Deliberately vague login failures
- One-time passwords for invited users
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, current_app, g, jsonify
from sqlalchemy import select

from .. import db
from ..audit import AuditAction, EntityType, record_audit
from ..auth import require_auth, require_organization, require_roles
from ..jwt import create_token
from ..models import Organization, User
from ..workflow import UserRole
from .common import (
    get_json_body,
    json_error,
    seed_default_statuses,
    validate_email,
    validate_password,
    validate_required_fields,
    validate_role,
)
from .users import create_tenant_user, created_user_response

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)


# =====================================================================
# Helper Functions
# =====================================================================


def issue_token(user: User) -> str:
    return create_token(
        user_id=user.id,
        email=user.email,
        role=user.role,
        organization_id=user.organization_id,
        private_key=current_app.config["JWT_PRIVATE_KEY"],
        expiry_hours=current_app.config["JWT_EXPIRY_HOURS"],
    )


def _profile(user: User) -> dict:
    data = user.to_dict()
    organization = user.organization
    data["organization"] = (
        {"id": organization.id, "name": organization.name, "logo_url": organization.logo_url}
        if organization
        else None
    )
    return data


# =====================================================================
# API Endpoints
# =====================================================================


@auth_bp.route("/register", methods=["POST"])
def register() -> tuple[Response, int]:
    """
    Register a new user account.

    Self-registration always yields a ``member``; elevated roles are only
    granted by a tenant admin.

    Returns:
        201 with the created user, 400 on invalid input, 403 for an
        elevated role, 409 if the email is already registered.
    """
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["email", "password", "name"])
    if missing:
        return json_error(missing, 400)

    email = data["email"].strip().lower()
    name = data["name"].strip()
    error = validate_email(email)
    if error:
        return json_error(error, 400)
    if len(name) > 200:
        return json_error("name must be 200 characters or less", 400)
    error = validate_password(data["password"])
    if error:
        return json_error(error, 400)
    role = data.get("role", UserRole.MEMBER.value)
    error = validate_role(role)
    if error:
        return json_error(error, 400)
    if role != UserRole.MEMBER.value:
        return json_error("Only member accounts can be self-registered", 403)

    if db.session.scalar(select(User).where(User.email == email)):
        return json_error("Email already exists", 409)

    user = User(email=email, name=name, role=role)
    user.set_password(data["password"])
    db.session.add(user)
    db.session.commit()
    logger.info("Registered user_id=%s", user.id)
    return jsonify({"user": user.to_dict()}), 201


@auth_bp.route("/login", methods=["POST"])
def login() -> tuple[Response, int]:
    """
    Authenticate a user and issue a JWT.

    The same message is returned for unknown emails, wrong passwords and
    deactivated accounts.
    """
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["email", "password"])
    if missing:
        return json_error(missing, 400)

    email = data["email"].strip().lower()
    user = db.session.scalar(select(User).where(User.email == email))
    if not user or not user.is_active or not user.check_password(data["password"]):
        logger.warning("Failed login attempt for %s", email)
        record_audit(
            EntityType.USER,
            user.id if user else None,
            AuditAction.LOGIN_FAILED,
            new_values={"email": email},
            user_id=user.id if user else None,
            organization_id=user.organization_id if user else None,
        )
        db.session.commit()
        return json_error("Invalid email or password", 401)

    record_audit(
        EntityType.USER,
        user.id,
        AuditAction.LOGIN,
        user_id=user.id,
        organization_id=user.organization_id,
    )
    db.session.commit()
    return jsonify({"token": issue_token(user), "user": _profile(user)}), 200


@auth_bp.route("/profile", methods=["GET"])
@require_auth
def profile() -> tuple[Response, int]:
    return jsonify({"user": _profile(g.current_user)}), 200


@auth_bp.route("/change-password", methods=["POST"])
@require_auth
def change_password() -> tuple[Response, int]:
    data = get_json_body() or {}
    missing = validate_required_fields(data, ["current_password", "new_password"])
    if missing:
        return json_error(missing, 400)

    user: User = g.current_user
    if not user.check_password(data["current_password"]):
        return json_error("Current password is incorrect", 400)
    error = validate_password(data["new_password"])
    if error:
        return json_error(error, 400)

    user.set_password(data["new_password"])
    user.must_change_password = False
    record_audit(EntityType.USER, user.id, AuditAction.PASSWORD_CHANGE)
    db.session.commit()
    logger.info("Password changed for user_id=%s", user.id)
    return jsonify({"message": "Password updated successfully"}), 200


@auth_bp.route("/create-organization", methods=["POST"])
@require_auth
def create_organization() -> tuple[Response, int]:
    """
    Create an organization for a user who does not belong to one yet.

    The creator becomes the organization's admin and the default status
    catalog is seeded.  A fresh token reflecting the new tenant is
    returned alongside the organization.
    """
    user: User = g.current_user
    if user.organization_id is not None:
        return json_error("User already belongs to an organization", 409)

    data = get_json_body() or {}
    missing = validate_required_fields(data, ["name"])
    if missing:
        return json_error(missing, 400)
    name = data["name"].strip()
    if len(name) > 200:
        return json_error("name must be 200 characters or less", 400)

    organization = Organization(
        name=name,
        description=data.get("description"),
        industry=data.get("industry"),
        size=data.get("size"),
        created_by_id=user.id,
    )
    db.session.add(organization)
    db.session.flush()

    user.organization_id = organization.id
    user.role = UserRole.ADMIN.value
    seed_default_statuses(organization.id)
    record_audit(
        EntityType.ORGANIZATION,
        organization.id,
        AuditAction.CREATE,
        new_values={"name": organization.name},
        organization_id=organization.id,
    )
    db.session.commit()
    logger.info("Organization %s created by user_id=%s", organization.id, user.id)

    return (
        jsonify(
            {
                "organization": organization.to_dict(),
                "user": user.to_dict(),
                "token": issue_token(user),
            }
        ),
        201,
    )



@auth_bp.route("/refresh", methods=["POST"])
@require_auth
def refresh() -> tuple[Response, int]:
    """Issue a new token carrying the caller's current role and tenant."""
    user: User = g.current_user
    return jsonify({"token": issue_token(user), "user": _profile(user)}), 200


@auth_bp.route("/logout", methods=["POST"])
@require_auth
def logout() -> tuple[Response, int]:
    # Tokens are stateless; the client discards its copy.
    record_audit(EntityType.USER, g.user_id, AuditAction.LOGOUT)
    db.session.commit()
    logger.info("User_id=%s logged out", g.user_id)
    return jsonify({"message": "Logged out successfully"}), 200


@auth_bp.route("/invite", methods=["POST"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value, UserRole.PROJECT_MANAGER.value)
def invite_user() -> tuple[Response, int]:
    """
    Invite a user into the caller's organization.

    Body: ``email``, ``name``, optional ``role`` and ``project_ids``.
    Admins may invite any role, project managers only members.  The
    response carries a ``temporary_password`` that must be changed on
    first sign-in.
    """
    data = get_json_body() or {}
    if g.role == UserRole.ADMIN.value:
        allowed_roles = tuple(role.value for role in UserRole)
    else:
        allowed_roles = (UserRole.MEMBER.value,)
    user, temporary_password, error_response = create_tenant_user(data, allowed_roles)
    if error_response is not None:
        return error_response

    record_audit(
        EntityType.USER,
        user.id,
        AuditAction.INVITE_USER,
        new_values={
            "email": user.email,
            "role": user.role,
            "project_ids": data.get("project_ids") or [],
        },
    )
    db.session.commit()
    logger.info("User_id=%s invited user_id=%s", g.user_id, user.id)
    return created_user_response(user, temporary_password)
