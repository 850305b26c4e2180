"""
Activity Tracker Flask Application Factory.

Provides the ``create_app`` factory function that assembles the tracker
API.  The factory pattern allows multiple application instances with
different configurations (development, testing, production) to coexist in
the same process.

All JSON endpoints are registered as blueprints under ``/api`` (see
``tracker_app.routes``); maintenance commands are registered on the Flask
CLI (see ``tracker_app.cli``).

Key Concepts Demonstrated:
- One factory assembling a dozen resource blueprints under ``/api``
- A single ``db`` shared by models, routes and CLI commands
- Application-wide JSON error handlers and CORS headers
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from flask import Flask, jsonify
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.engine import make_url
from werkzeug.exceptions import HTTPException

from .config import get_config, load_jwt_keys

db = SQLAlchemy()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _prepare_sqlite_directory(database_uri: str) -> None:
    url = make_url(database_uri)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def _register_error_handlers(app: Flask) -> None:
    """Render HTTP errors with the ``{"error": ...}`` envelope."""

    messages = {
        400: "Bad request",
        404: "Resource not found",
        405: "Method not allowed",
        413: "File too large",
    }

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        message = messages.get(error.code, error.description or error.name)
        return jsonify({"error": message}), error.code

    @app.errorhandler(500)
    def internal_error(error: Exception):
        db.session.rollback()
        logger.exception("Internal server error: %s", error)
        return jsonify({"error": "Internal server error"}), 500


def create_app(config_name: str | None = None) -> Flask:
    """
    Create and configure the activity tracker application.

    Loads the configuration class and JWT key pair, initialises SQLAlchemy,
    registers blueprints, CLI commands, CORS and error handlers, and ensures
    that all database tables exist.

    Args:
        config_name: Optional configuration environment name
            (``"development"``, ``"testing"``, ``"production"``).  When
            *None*, ``FLASK_ENV`` is used, defaulting to ``"development"``.

    Returns:
        A fully configured Flask application instance.
    """
    app = Flask(__name__, instance_relative_config=True)
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    private_key, public_key = load_jwt_keys(testing=bool(app.config.get("TESTING")))
    app.config["JWT_PRIVATE_KEY"] = private_key
    app.config["JWT_PUBLIC_KEY"] = public_key

    logger.info("Creating tracker app with config: %s", config_class.__name__)

    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
    _prepare_sqlite_directory(app.config["SQLALCHEMY_DATABASE_URI"])

    db.init_app(app)

    from .cli import register_commands
    from .routes import register_blueprints

    register_blueprints(app)
    register_commands(app)
    CORS(
        app,
        origins=app.config["CORS_ORIGINS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["Content-Disposition"],
        supports_credentials=True,
    )
    _register_error_handlers(app)

    with app.app_context():
        db.create_all()
        logger.info("Tracker database tables created")

    return app
