"""HS256 access-token verification.

Tokens are issued by the account service with a shared secret. This
service only verifies them.
"""

from __future__ import annotations

from typing import Any

import jwt

from readtrack.config import get_settings


def verify_token(token: str, expected_type: str = "access") -> dict[str, Any]:
    """Decode and validate a token. Raises ``jwt.InvalidTokenError`` on failure."""
    settings = get_settings()
    payload: dict[str, Any] = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["sub", "exp"]},
    )
    token_type = payload.get("type", "access")
    if token_type != expected_type:
        msg = f"Expected {expected_type} token, got {token_type}"
        raise jwt.InvalidTokenError(msg)
    return payload
