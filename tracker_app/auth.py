"""
Authentication and authorization decorators.

``require_auth`` turns a Bearer token into the authenticated ``User`` row;
``require_roles`` and ``require_organization`` are stacked below it to gate
endpoints on the database role and tenant of that user.

Usage::

    @bp.route("/things", methods=["POST"])
    @require_auth
    @require_roles("admin", "project_manager")
    def create_thing(): ...

Key Concepts Demonstrated:
- Decorator pattern for endpoint authentication
- The loaded ``User`` row kept on ``g.current_user`` for the request
- Role and tenant checks against the database, not the token
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps

from flask import current_app, g, jsonify, request

from . import db
from .jwt import DEFAULT_ALLOWED_ALGORITHMS, verify_token
from .models import User

logger = logging.getLogger(__name__)


def _extract_bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def require_auth(view_func: Callable):
    """
    Enforce Bearer-token authentication on an endpoint.

    On success ``g.current_user``, ``g.user_id``, ``g.organization_id`` and
    ``g.role`` are populated from the user's database row, so a role change
    or deactivation takes effect immediately for tokens already issued.
    Otherwise the request is answered with ``401``.
    """

    @wraps(view_func)
    def wrapper(*args, **kwargs):
        token = _extract_bearer_token()
        if token is None:
            return jsonify({"error": "Missing or invalid Authorization header"}), 401

        payload = verify_token(
            token,
            current_app.config["JWT_PUBLIC_KEY"],
            algorithms=DEFAULT_ALLOWED_ALGORITHMS,
            leeway=int(current_app.config.get("JWT_CLOCK_SKEW_SECONDS", 30)),
        )
        if payload is None:
            return jsonify({"error": "Invalid or expired token"}), 401

        user = db.session.get(User, payload["user_id"])
        if user is None or not user.is_active:
            logger.warning("Rejected token for unknown or inactive user_id=%s", payload["user_id"])
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        g.user_id = user.id
        g.organization_id = user.organization_id
        g.role = user.role
        return view_func(*args, **kwargs)

    return wrapper


def require_roles(*roles: str):
    """Answer ``403`` unless the authenticated user holds one of *roles*."""

    def decorator(view_func: Callable):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            if g.role not in roles:
                return jsonify({"error": "Insufficient permissions"}), 403
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def require_organization(view_func: Callable):
    """Answer ``400`` when the authenticated user has no organization."""

    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if g.organization_id is None:
            return jsonify({"error": "User not associated with any organization"}), 400
        return view_func(*args, **kwargs)

    return wrapper
