"""
Access token verification.

Tokens are issued by the authentication service; this module only checks
signature and expiry and extracts the caller's identity. No database hit.

Token transports:
    • HTTP: ``Authorization: Bearer <token>``
    • WebSocket: ``?token=<token>`` query parameter, header as fallback

Claims:
    userId (or sub) — account id, required
    email           — optional
    role            — "user" | "admin", defaults to "user"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jwt  # PyJWT

from guardian.app.core.config import settings
from guardian.app.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Verified caller identity."""
    user_id: str
    email: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_access_token(token: str) -> AuthenticatedUser:
    """
    Validate a JWT access token and return the caller identity.

    Raises
    ------
    AuthenticationError
        If the token is expired, malformed or lacks a user id.
    """
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid JWT: %s", e)
        raise AuthenticationError("Invalid token")

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject")

    return AuthenticatedUser(
        user_id=str(user_id),
        email=payload.get("email"),
        role=payload.get("role") or "user",
    )


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization`` header value."""
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


def extract_token_from_websocket(websocket) -> Optional[str]:
    """
    Extract the access token from a WebSocket handshake.

    Query parameter first (mobile clients cannot set headers on upgrade),
    then the Authorization header.
    """
    token = websocket.query_params.get("token")
    if token:
        return token
    return extract_bearer_token(websocket.headers.get("authorization"))
