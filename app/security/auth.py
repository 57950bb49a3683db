# ==== AUTHENTICATION AND AUTHORIZATION ==== #

"""
Authentication and authorization for admin operations in OrderDesk.

This module provides JWT-based authentication for the HTTP surface and the
Actor identity that every mutating service call receives. Token problems
(missing, malformed, expired, bad signature) are authentication failures
and surface as 401; a valid token whose role is not allowed is an
authorization failure and surfaces as AuthorizationError (403).
"""

import datetime as dt
from dataclasses import dataclass
from typing import Iterable, Optional

import jwt
from fastapi import Header, HTTPException

from app.business.errors import AuthorizationError
from app.settings import settings


ADMIN_ROLE = "admin"
SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a mutating operation."""

    actor_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# Identity used by webhooks and scheduled jobs
SYSTEM_ACTOR = Actor(actor_id=SYSTEM_ACTOR_ID, role="system")


def ensure_role(actor: Actor, allowed: Iterable[str] = (ADMIN_ROLE,)) -> Actor:
    """
    Check that an actor holds one of the allowed roles.

    Args:
        actor (Actor): Caller identity
        allowed (Iterable[str]): Roles permitted for the operation

    Returns:
        Actor: The same actor, for chaining

    Raises:
        AuthorizationError: If the actor's role is not allowed
    """
    allowed = tuple(allowed)
    if actor is None or actor.role not in allowed:
        raise AuthorizationError(
            "Actor lacks the required role",
            actor_id=getattr(actor, "actor_id", None),
            required=list(allowed),
        )
    return actor


# ==== AUTHENTICATION FUNCTIONS ==== #

def _decode_bearer(authorization: Optional[str]) -> dict:
    # --► AUTHORIZATION HEADER VALIDATION
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    # --► BEARER TOKEN FORMAT VALIDATION
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_actor(authorization: Optional[str] = Header(None)) -> Actor:
    """
    Authenticate the caller from a Bearer JWT.

    Args:
        authorization (Optional[str]): Authorization header with Bearer token

    Returns:
        Actor: Identity built from the ``sub`` and ``role`` claims

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    payload = _decode_bearer(authorization)
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return Actor(actor_id=str(subject), role=str(payload.get("role", "")))


def require_admin(authorization: Optional[str] = Header(None)) -> Actor:
    """
    Require an authenticated admin for protected endpoints.

    Args:
        authorization (Optional[str]): Authorization header with Bearer token

    Returns:
        Actor: Authenticated admin actor

    Raises:
        HTTPException: 401 if authentication fails
        AuthorizationError: If the token's role is not admin
    """
    return ensure_role(require_actor(authorization))


def create_token(user_id: str, role: str = ADMIN_ROLE, expires_in_hours: int = 24) -> str:
    """Create a signed JWT for a user.

    Args:
        user_id: User identifier (``sub`` claim)
        role: Role claim
        expires_in_hours: Token expiration time in hours

    Returns:
        JWT token string
    """
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + dt.timedelta(hours=expires_in_hours),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_admin_token(user_id: str, expires_in_hours: int = 24) -> str:
    return create_token(user_id, ADMIN_ROLE, expires_in_hours)
