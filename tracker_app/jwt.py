"""
JWT token creation and verification.

Tokens are signed with RS256: the application holds the private key for
issuing and verifies with the public key.

Token structure (claims):
    - ``user_id``         -- integer primary key of the authenticated user.
    - ``email``           -- login identifier of the user.
    - ``role``            -- role at issue time (informational; permission
      checks always use the role stored in the database).
    - ``organization_id`` -- tenant at issue time, or ``None``.
    - ``iat`` / ``exp``   -- issued-at and expiration (UTC epoch seconds).

Key Concepts Demonstrated:
- Tenant and role claims alongside the registered iat/exp claims
- An algorithm allow-list that rejects HS256 and "none" tokens
- Clock-skew leeway taken from configuration
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

DEFAULT_ALLOWED_ALGORITHMS = ["RS256"]
REQUIRED_TOKEN_CLAIMS = ["user_id", "email", "iat", "exp"]


def create_token(
    user_id: int,
    email: str,
    role: str,
    organization_id: int | None,
    private_key: str,
    expiry_hours: int,
) -> str:
    """
    Create an RS256-signed JWT for an authenticated user.

    Args:
        user_id: Primary key of the user.  Must be a positive integer.
        email: Email of the user.  Must be a non-empty string.
        role: Role of the user at issue time.
        organization_id: Tenant of the user, or ``None``.
        private_key: RSA private key in PEM format.
        expiry_hours: Number of hours from now until the token expires.

    Returns:
        A compact JWS string suitable for a Bearer ``Authorization`` header.

    Raises:
        ValueError: If *user_id* is not positive or *email* is blank.
    """
    if int(user_id) <= 0:
        raise ValueError("user_id must be a positive integer")
    if not isinstance(email, str) or not email.strip():
        raise ValueError("email must be a non-empty string")

    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=int(expiry_hours))

    payload: dict[str, Any] = {
        "user_id": int(user_id),
        "email": email,
        "role": role,
        "organization_id": organization_id,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


def verify_token(
    token: str,
    public_key: str,
    algorithms: list[str] | None = None,
    leeway: int = 30,
) -> dict[str, Any] | None:
    """
    Decode and validate a JWT, returning the payload on success.

    Checks the signature, ``exp`` / ``iat`` (with *leeway* seconds of clock
    skew), presence of the required claims, and that ``user_id`` is a
    positive integer and ``email`` a non-empty string.

    Returns:
        The decoded payload, or ``None`` if verification fails for any
        reason.
    """
    try:
        decoded = jwt.decode(
            token,
            public_key,
            algorithms=algorithms or DEFAULT_ALLOWED_ALGORITHMS,
            options={"require": REQUIRED_TOKEN_CLAIMS},
            leeway=leeway,
        )
    except jwt.InvalidTokenError:
        return None

    user_id = decoded.get("user_id")
    email = decoded.get("email")
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
        return None
    if not isinstance(email, str) or not email.strip():
        return None
    return decoded
