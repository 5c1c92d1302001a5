"""Bearer token validation and FastAPI auth dependencies.

Tokens are HS256 JWTs issued by the wiki's session layer and signed with
JWT_SECRET. Required claims:
  - sub: string - central user ID
  - aud: string|list - must include JWT_AUDIENCE
  - exp: int - expiration timestamp

Optional claims:
  - role: "admin" grants access to the request queue
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from jwt.exceptions import DecodeError, InvalidTokenError

from rtbf.config import Settings, get_settings
from rtbf.models.identity import UserIdentity
from rtbf.wiring import ForgetContainer

log = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


class TokenValidationError(Exception):
    """Raised when a bearer token cannot be validated."""


def validate_token(token: str, settings: Settings) -> dict[str, Any]:
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            options={"verify_exp": True, "verify_aud": True},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Token validation failed: {exc}") from exc

    sub = claims.get("sub")
    if not sub or not str(sub).isdigit():
        raise TokenValidationError("Missing or non-numeric 'sub' claim")
    return claims


def create_token(
    *,
    user_id: int,
    secret: str,
    audience: str = "rtbf-api",
    role: str = "user",
    expires_in: int = 3600,
) -> str:
    """Create a signed token (dev tooling and tests)."""
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": str(user_id),
        "role": role,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@dataclass(frozen=True)
class AuthenticatedUser:
    identity: UserIdentity
    role: str
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_container(request: Request) -> ForgetContainer:
    container: ForgetContainer | None = getattr(request.app.state, "forget", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return container


async def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
    container: ForgetContainer = Depends(get_container),
) -> AuthenticatedUser:
    """Validate the bearer token and load the user from the identity store.

    Raises HTTP 401 on a missing/invalid token or an unknown user.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = validate_token(auth_header.removeprefix("Bearer ").strip(), settings)
    except TokenValidationError as exc:
        log.info("auth.token_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    identity = await container.renamer.get_user(int(claims["sub"]))
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return AuthenticatedUser(identity=identity, role=str(claims.get("role", "")), claims=claims)


async def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    if not user.is_admin:
        log.warning("auth.admin_required", user_id=user.identity.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user
