"""
Health-check endpoints.

Endpoints:
    GET /api/health     - Liveness check (public)
    GET /api/health/db  - Database connectivity check (public)
"""

from __future__ import annotations

import logging
import os

from flask import Blueprint, Response, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .. import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.route("/health", methods=["GET"])
def health_check() -> tuple[Response, int]:
    """
    Return service health status.

    Intended for load-balancer and orchestrator liveness checks.
    """
    return (
        jsonify(
            {
                "status": "healthy",
                "service": "activity-tracker",
                "environment": os.getenv("ENVIRONMENT", "unknown"),
            }
        ),
        200,
    )


@health_bp.route("/health/db", methods=["GET"])
def database_health() -> tuple[Response, int]:
    """Run ``SELECT 1`` against the configured database."""
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        db.session.rollback()
        return jsonify({"status": "disconnected", "error": str(exc)}), 503
    return jsonify({"status": "connected"}), 200
