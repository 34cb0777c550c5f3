"""Bearer token resolution for voice connections."""

from __future__ import annotations

import logging
from typing import Optional

import jwt

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when a connection presents a token that cannot be trusted."""


def resolve_user_id(token: Optional[str], secret: Optional[str]) -> Optional[str]:
    """Return the user id carried by ``token``, or ``None`` for anonymous use.

    Tokens are HS256 JWTs issued by the account service with the user id in
    ``userId`` (or the standard ``sub`` claim).
    """

    if not token:
        return None
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    if not secret:
        raise AuthenticationError("Token authentication is not configured")

    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise AuthenticationError("Token does not identify a user")
    return str(user_id)


__all__ = ["AuthenticationError", "resolve_user_id"]
