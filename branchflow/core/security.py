"""Session tokens (JWT in cookie)."""

from datetime import datetime, timedelta, timezone

import jwt

from branchflow.core.config import settings


def create_session_token(user_id: int, role: str, branch_id: int | None) -> str:
    """
    Create signed session JWT.

    Always signs with the current secret (JWT_SECRET). The token carries the
    actor identity, role, and home branch.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "branch_id": branch_id,
        "iat": now,
        "exp": now + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries the current secret first, then the previous one (rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error: jwt.InvalidTokenError | None = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
    raise last_error  # type: ignore[misc]
