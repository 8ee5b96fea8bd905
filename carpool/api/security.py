"""
Bearer-token identity.

Tokens are issued by the identity service; this service only verifies them.
Claims: ``sub`` (user id as a string) and ``role``.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from carpool.config import settings
from carpool.domain.entities import Actor, utcnow
from carpool.domain.enums import Role
from carpool.domain.errors import Unauthenticated


def decode_actor(token: str) -> Actor:
    try:
        payload = jwt.decode(
            token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm]
        )
    except ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except JWTError:
        raise Unauthenticated("Invalid authentication token")

    try:
        return Actor(user_id=int(payload["sub"]), role=Role(payload["role"]))
    except (KeyError, TypeError, ValueError):
        raise Unauthenticated("Invalid token payload")


def issue_token(
    user_id: int, role: Role, expires_in: Optional[timedelta] = timedelta(hours=1)
) -> str:
    """Mint a token with the same claims the identity service uses (dev/tests)."""
    claims = {"sub": str(user_id), "role": Role(role).value}
    if expires_in is not None:
        claims["exp"] = utcnow() + expires_in
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
