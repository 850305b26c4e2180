"""
Status configuration API endpoints.

Each organization owns a catalog of task, activity and approval statuses.
Tasks and activities may only use active statuses of their type.

Endpoints:
    GET    /api/status-configuration                      - Catalog (grouped or by type)
    GET    /api/status-configuration/active               - Active statuses
    GET    /api/status-configuration/mapping              - Display/next-status map
    GET    /api/status-configuration/stats                - Usage statistics
    POST   /api/status-configuration                      - Add a status (admin)
    PUT    /api/status-configuration/<id>                 - Update a status (admin)
    DELETE /api/status-configuration/<id>                 - Delete an unused status (admin)
    POST   /api/status-configuration/reorder              - Reorder a type (admin)
    POST   /api/status-configuration/validate-transition  - Check a transition
    POST   /api/status-configuration/initialize           - Seed defaults (admin)
"""

from __future__ import annotations

import logging
import re

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import func, select, update

from .. import db
from ..auth import require_auth, require_organization, require_roles
from ..models import Activity, StatusConfiguration, Task
from ..workflow import (
    DEFAULT_TRANSITIONS,
    StatusType,
    UserRole,
    is_valid_transition,
    normalize_status_for_type,
)
from .common import (
    get_json_body,
    json_error,
    parse_bool,
    seed_default_statuses,
    tenant_get,
    validate_required_fields,
)

logger = logging.getLogger(__name__)

status_config_bp = Blueprint("status_configuration", __name__)

COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
STATUS_TYPES = [t.value for t in StatusType]


# =====================================================================
# Helper Functions
# =====================================================================


def _validate_type(value) -> str | None:
    if value not in STATUS_TYPES:
        return f"Invalid type. Must be one of: {STATUS_TYPES}"
    return None


def _catalog(status_type: str | None = None, active_only: bool = False):
    stmt = select(StatusConfiguration).where(
        StatusConfiguration.organization_id == g.organization_id
    )
    if status_type:
        stmt = stmt.where(StatusConfiguration.type == status_type)
    if active_only:
        stmt = stmt.where(StatusConfiguration.is_active.is_(True))
    return db.session.scalars(
        stmt.order_by(
            StatusConfiguration.type,
            StatusConfiguration.order_index,
            StatusConfiguration.id,
        )
    ).all()


def _usage_count(status: StatusConfiguration) -> int:
    if status.type == StatusType.TASK.value:
        column, model = Task.status, Task
    elif status.type == StatusType.ACTIVITY.value:
        column, model = Activity.status, Activity
    else:
        column, model = Activity.approval_state, Activity
    return db.session.scalar(
        select(func.count(model.id)).where(
            model.organization_id == status.organization_id, column == status.name
        )
    )


def _catalog_response(active_only: bool) -> tuple[Response, int]:
    status_type = request.args.get("type")
    if status_type:
        error = _validate_type(status_type)
        if error:
            return json_error(error, 400)
        statuses = [s.to_dict() for s in _catalog(status_type, active_only)]
        return jsonify({"statuses": statuses, "count": len(statuses)}), 200

    grouped: dict[str, list] = {t: [] for t in STATUS_TYPES}
    for status in _catalog(active_only=active_only):
        grouped.setdefault(status.type, []).append(status.to_dict())
    return jsonify({"statuses": grouped}), 200


# =====================================================================
# Read Endpoints
# =====================================================================


@status_config_bp.route("", methods=["GET"])
@require_auth
@require_organization
def list_statuses() -> tuple[Response, int]:
    return _catalog_response(active_only=False)


@status_config_bp.route("/active", methods=["GET"])
@require_auth
@require_organization
def list_active_statuses() -> tuple[Response, int]:
    return _catalog_response(active_only=True)


@status_config_bp.route("/mapping", methods=["GET"])
@require_auth
@require_organization
def status_mapping() -> tuple[Response, int]:
    """
    Map every active status to its display data and allowed next statuses.

    Default statuses follow the default workflow graph; custom statuses may
    move to any other active status of their type.
    """
    mapping: dict[str, dict] = {t: {} for t in STATUS_TYPES}
    active: dict[str, list[StatusConfiguration]] = {t: [] for t in STATUS_TYPES}
    for status in _catalog(active_only=True):
        active.setdefault(status.type, []).append(status)

    for status_type, statuses in active.items():
        names = [status.name for status in statuses]
        for status in statuses:
            mapping[status_type][status.name] = {
                "display_name": status.name,
                "color": status.color,
                "order_index": status.order_index,
                "next": [
                    name
                    for name in names
                    if name != status.name
                    and is_valid_transition(status_type, status.name, name, names)
                ],
            }
    return jsonify({"mapping": mapping}), 200


@status_config_bp.route("/stats", methods=["GET"])
@require_auth
@require_organization
def status_stats() -> tuple[Response, int]:
    statuses = _catalog()
    by_type = {t: {"total": 0, "active": 0, "usage": {}} for t in STATUS_TYPES}
    for status in statuses:
        entry = by_type.setdefault(status.type, {"total": 0, "active": 0, "usage": {}})
        entry["total"] += 1
        entry["active"] += int(bool(status.is_active))
        entry["usage"][status.name] = _usage_count(status)
    return (
        jsonify(
            {
                "total": len(statuses),
                "active": sum(1 for s in statuses if s.is_active),
                "by_type": by_type,
            }
        ),
        200,
    )


@status_config_bp.route("/validate-transition", methods=["POST"])
@require_auth
@require_organization
def validate_transition() -> tuple[Response, int]:
    data = get_json_body() or {}
    error = _validate_type(data.get("type")) or validate_required_fields(
        data, ["from_status", "to_status"]
    )
    if error:
        return json_error(error, 400)

    active_names = [status.name for status in _catalog(data["type"], active_only=True)]
    try:
        is_valid = is_valid_transition(
            data["type"], data["from_status"], data["to_status"], active_names
        )
    except ValueError as exc:
        return json_error(str(exc), 400)
    return jsonify({"is_valid": is_valid}), 200


# =====================================================================
# Admin Endpoints
# =====================================================================


@status_config_bp.route("", methods=["POST"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def create_status() -> tuple[Response, int]:
    """Add a status at the end of its type's ordering."""
    data = get_json_body() or {}
    error = _validate_type(data.get("type")) or validate_required_fields(data, ["name"])
    if error:
        return json_error(error, 400)
    name = normalize_status_for_type(data["type"], data["name"])
    if len(name) > 100:
        return json_error("name must be 100 characters or less", 400)
    color = data.get("color", "#808080")
    if not isinstance(color, str) or not COLOR_PATTERN.match(color):
        return json_error("color must be a hex value like #1A2B3C", 400)

    existing = db.session.scalar(
        select(StatusConfiguration).where(
            StatusConfiguration.organization_id == g.organization_id,
            StatusConfiguration.type == data["type"],
            StatusConfiguration.name == name,
        )
    )
    if existing is not None:
        return json_error("A status with this name already exists", 409)

    last_index = db.session.scalar(
        select(func.max(StatusConfiguration.order_index)).where(
            StatusConfiguration.organization_id == g.organization_id,
            StatusConfiguration.type == data["type"],
        )
    )
    status = StatusConfiguration(
        organization_id=g.organization_id,
        type=data["type"],
        name=name,
        color=color,
        order_index=(last_index or 0) + 1,
    )
    db.session.add(status)
    db.session.commit()
    logger.info("Status '%s' (%s) created in organization %s", name, status.type, g.organization_id)
    return jsonify({"status": status.to_dict()}), 201


@status_config_bp.route("/<int:status_id>", methods=["PUT"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def update_status(status_id: int) -> tuple[Response, int]:
    """
    Update name, color, activity flag or ordering of a status.

    Renaming a task or activity status also renames it on every row that
    uses it; approval states are fixed and cannot be renamed.
    """
    status = tenant_get(StatusConfiguration, status_id)
    if status is None:
        return json_error("Status not found", 404)
    data = get_json_body()
    if data is None:
        return json_error("Request body must be JSON", 400)

    new_name = status.name
    if "name" in data:
        error = validate_required_fields(data, ["name"])
        if error:
            return json_error(error, 400)
        new_name = normalize_status_for_type(status.type, data["name"])
        if len(new_name) > 100:
            return json_error("name must be 100 characters or less", 400)
        if new_name != status.name and status.type == StatusType.APPROVAL.value:
            return json_error("Approval states cannot be renamed", 400)
        duplicate = db.session.scalar(
            select(StatusConfiguration).where(
                StatusConfiguration.organization_id == g.organization_id,
                StatusConfiguration.type == status.type,
                StatusConfiguration.name == new_name,
                StatusConfiguration.id != status.id,
            )
        )
        if duplicate is not None:
            return json_error("A status with this name already exists", 409)
    if "color" in data and (
        not isinstance(data["color"], str) or not COLOR_PATTERN.match(data["color"])
    ):
        return json_error("color must be a hex value like #1A2B3C", 400)
    if "order_index" in data and (
        not isinstance(data["order_index"], int)
        or isinstance(data["order_index"], bool)
        or data["order_index"] < 0
    ):
        return json_error("order_index must be a non-negative integer", 400)

    if new_name != status.name:
        model = Task if status.type == StatusType.TASK.value else Activity
        db.session.execute(
            update(model)
            .where(model.organization_id == g.organization_id, model.status == status.name)
            .values(status=new_name)
        )
        logger.info("Status '%s' renamed to '%s'", status.name, new_name)
        status.name = new_name
    if "color" in data:
        status.color = data["color"]
    if "is_active" in data:
        status.is_active = parse_bool(data["is_active"])
    if "order_index" in data:
        status.order_index = data["order_index"]
    db.session.commit()
    return jsonify({"status": status.to_dict()}), 200


@status_config_bp.route("/<int:status_id>", methods=["DELETE"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def delete_status(status_id: int) -> tuple[Response, int]:
    status = tenant_get(StatusConfiguration, status_id)
    if status is None:
        return json_error("Status not found", 404)
    in_use = _usage_count(status)
    if in_use:
        return json_error(
            f"Status is used by {in_use} item(s) and cannot be deleted", 409
        )
    db.session.delete(status)
    db.session.commit()
    return jsonify({"message": "Status deleted successfully"}), 200


@status_config_bp.route("/reorder", methods=["POST"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def reorder_statuses() -> tuple[Response, int]:
    """Apply the order of ``status_ids`` (every status of ``type``)."""
    data = get_json_body() or {}
    error = _validate_type(data.get("type"))
    if error:
        return json_error(error, 400)
    status_ids = data.get("status_ids")
    if not isinstance(status_ids, list) or not all(isinstance(i, int) for i in status_ids):
        return json_error("'status_ids' must be a list of ids", 400)

    statuses = {status.id: status for status in _catalog(data["type"])}
    if len(status_ids) != len(set(status_ids)) or set(status_ids) != set(statuses):
        return json_error("'status_ids' must list every status of this type exactly once", 400)

    for index, status_id in enumerate(status_ids, start=1):
        statuses[status_id].order_index = index
    db.session.commit()
    ordered = [statuses[status_id].to_dict() for status_id in status_ids]
    return jsonify({"statuses": ordered, "count": len(ordered)}), 200


@status_config_bp.route("/initialize", methods=["POST"])
@require_auth
@require_organization
@require_roles(UserRole.ADMIN.value)
def initialize_statuses() -> tuple[Response, int]:
    if _catalog():
        return json_error("Status configuration already initialized", 409)
    created = seed_default_statuses(g.organization_id)
    db.session.commit()
    logger.info("Seeded %s default statuses for organization %s", created, g.organization_id)
    transitions = {
        kind: {source: list(targets) for source, targets in graph.items()}
        for kind, graph in DEFAULT_TRANSITIONS.items()
    }
    return jsonify({"created": created, "transitions": transitions}), 201
