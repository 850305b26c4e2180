"""
Configuration Classes for the Activity Tracker.

Every setting is read from the environment once, at import time, with a
development default.  ``Config`` carries those defaults; the subclasses
only change what differs for development, the test suite and production.

JWT keys are not class attributes; ``create_app`` resolves them through
``load_jwt_keys`` at start-up.
"""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Prefix of the key variables consulted first by the test configuration.
TEST_KEY_PREFIX = "TEST_"


def _env(name: str) -> str:
    return os.environ.get(name, "").strip()


def _load_key(name: str) -> str:
    """
    Return the PEM stored in ``$name`` or in the file named by ``$name_PATH``.

    An inline PEM wins over a file path.

    Raises:
        RuntimeError: If neither variable is set or the file is unreadable.
    """
    inline = _env(name)
    if inline:
        return inline

    path_var = f"{name}_PATH"
    path = _env(path_var)
    if not path:
        raise RuntimeError(
            f"Missing JWT key configuration: set {name} or {path_var}."
        )
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise RuntimeError(
            f"Unable to read JWT key file at '{path}' from {path_var}."
        ) from exc


def _key_configured(name: str) -> bool:
    return bool(_env(name) or _env(f"{name}_PATH"))


def load_jwt_keys(*, testing: bool) -> tuple[str, str]:
    """
    Resolve the ``(private_pem, public_pem)`` pair used for RS256 tokens.

    The test configuration prefers the ``TEST_JWT_*`` variables when any of
    them is set and otherwise uses the regular ``JWT_*`` ones.
    """
    prefix = ""
    if testing and any(
        _key_configured(f"{TEST_KEY_PREFIX}{name}")
        for name in ("JWT_PRIVATE_KEY", "JWT_PUBLIC_KEY")
    ):
        prefix = TEST_KEY_PREFIX
    return _load_key(f"{prefix}JWT_PRIVATE_KEY"), _load_key(f"{prefix}JWT_PUBLIC_KEY")


class Config:
    """
    Defaults shared by every environment, each overridable by the
    environment variable of the same name.

    Attributes:
        SECRET_KEY: Flask session signing key.
        SQLALCHEMY_DATABASE_URI: Database connection string.  Defaults to a
            local SQLite file; point it at ``mysql+pymysql://...`` for MySQL.
        JWT_EXPIRY_HOURS: Lifetime of newly issued access tokens.
        JWT_CLOCK_SKEW_SECONDS: Allowed clock drift when validating
            ``exp`` / ``iat`` claims.
        UPLOAD_FOLDER: Root directory for task attachments and logos.
        MAX_CONTENT_LENGTH: Hard cap on any request body.
        MAX_ATTACHMENT_BYTES: Per-file cap for task attachments.
        MAX_LOGO_BYTES: Per-file cap for organization logos.
        CORS_ORIGINS: Origins allowed by CORS, from a comma-separated
            ``CORS_ORIGINS`` variable; ``*`` allows any origin.
        AUDIT_RETENTION_DAYS: Age after which ``purge-audit-logs`` removes
            audit entries.
    """

    SECRET_KEY: str = os.environ.get(
        "SECRET_KEY", "tracker-dev-secret-change-in-production"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False
    SQLALCHEMY_DATABASE_URI: str = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'instance' / 'tracker.db'}",
    )

    JWT_EXPIRY_HOURS: int = int(os.environ.get("JWT_EXPIRY_HOURS", "24"))
    JWT_CLOCK_SKEW_SECONDS: int = int(os.environ.get("JWT_CLOCK_SKEW_SECONDS", "30"))

    UPLOAD_FOLDER: str = os.environ.get(
        "UPLOAD_FOLDER", str(BASE_DIR / "instance" / "uploads")
    )
    MAX_CONTENT_LENGTH: int = int(os.environ.get("MAX_CONTENT_LENGTH", str(16 * 1024 * 1024)))
    MAX_ATTACHMENT_BYTES: int = int(
        os.environ.get("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024))
    )
    MAX_LOGO_BYTES: int = int(os.environ.get("MAX_LOGO_BYTES", str(5 * 1024 * 1024)))

    CORS_ORIGINS: list[str] = [
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    AUDIT_RETENTION_DAYS: int = int(os.environ.get("AUDIT_RETENTION_DAYS", "90"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG: bool = True
    TESTING: bool = False


class TestingConfig(Config):
    """
    Settings for the pytest suite.

    ``TEST_DATABASE_URL`` points at a throwaway SQLite file;
    ``check_same_thread=False`` lets the test client reuse the connection.
    """

    DEBUG: bool = True
    TESTING: bool = True
    SQLALCHEMY_DATABASE_URI: str = os.environ.get(
        "TEST_DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'instance' / 'test_tracker.db'}?check_same_thread=False",
    )
    SQLALCHEMY_ENGINE_OPTIONS: dict = {"pool_pre_ping": True}
    JWT_EXPIRY_HOURS: int = int(os.environ.get("TEST_JWT_EXPIRY_HOURS", "1"))


class ProductionConfig(Config):
    """
    Configuration for production deployments.

    All secrets must be supplied through environment variables.
    """

    DEBUG: bool = False
    TESTING: bool = False


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Map *env* (or ``FLASK_ENV`` when omitted) to a configuration class.

    Unknown names resolve to ``DevelopmentConfig``.
    """
    if env is None:
        env = os.environ.get("FLASK_ENV", "development")
    return config.get(env, config["default"])
