"""Blueprint registration for the tracker API."""

from __future__ import annotations

from flask import Flask


def register_blueprints(app: Flask) -> None:
    """Mount every API blueprint under ``/api``."""
    from .activities import activities_bp
    from .approvals import approvals_bp
    from .attachments import attachments_bp
    from .audit import audit_bp
    from .auth import auth_bp
    from .boards import boards_bp
    from .comments import comments_bp
    from .health import health_bp
    from .organization import organization_bp
    from .projects import projects_bp
    from .reports import reports_bp
    from .status_config import status_config_bp
    from .tasks import tasks_bp
    from .users import users_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(organization_bp, url_prefix="/api/organization")
    app.register_blueprint(users_bp, url_prefix="/api/users")
    app.register_blueprint(projects_bp, url_prefix="/api/projects")
    app.register_blueprint(boards_bp, url_prefix="/api/boards")
    app.register_blueprint(tasks_bp, url_prefix="/api/tasks")
    app.register_blueprint(comments_bp, url_prefix="/api/tasks")
    app.register_blueprint(attachments_bp, url_prefix="/api/tasks")
    app.register_blueprint(activities_bp, url_prefix="/api/activities")
    app.register_blueprint(status_config_bp, url_prefix="/api/status-configuration")
    app.register_blueprint(reports_bp, url_prefix="/api/reports")
    app.register_blueprint(approvals_bp, url_prefix="/api/approvals")
    app.register_blueprint(audit_bp, url_prefix="/api/audit")
