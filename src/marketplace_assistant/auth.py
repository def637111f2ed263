"""JWT verification for the chat API.

Tokens are issued by the marketplace itself; this service only verifies the
HS256 signature and reads the user id from the ``sub`` claim. The FastAPI
dependency extracts the current user from the ``Authorization: Bearer <token>``
header.

When ``AUTH_ENABLED=false`` the dependency returns a fixed development user
so the API can be exercised without a token.
"""

from __future__ import annotations

from dataclasses import dataclass

import jwt
from fastapi import HTTPException, Request
from loguru import logger

from marketplace_assistant.config import Settings

ALGORITHM = "HS256"
DEV_USER_ID = "dev-user"


@dataclass
class AuthenticatedUser:
    """The user extracted from a valid JWT."""

    user_id: str
    name: str = ""
    email: str = ""


def _dev_user() -> AuthenticatedUser:
    return AuthenticatedUser(user_id=DEV_USER_ID, name="Dev User", email="dev@localhost")


def decode_token(token: str, secret: str) -> dict:
    """Decode and verify a JWT. Raises on invalid/expired tokens."""
    return jwt.decode(token, secret, algorithms=[ALGORITHM], options={"require": ["sub"]})


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: user from the bearer token, or the dev user when auth is off."""
    settings: Settings = request.app.state.settings

    if not settings.auth_enabled:
        return _dev_user()

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    try:
        claims = decode_token(auth_header[7:], settings.jwt_secret)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        logger.warning("Invalid JWT presented")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = str(claims["sub"]).strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return AuthenticatedUser(
        user_id=user_id,
        name=claims.get("name", ""),
        email=claims.get("email", ""),
    )
