"""Authentication for the sync backend.

Tokens are issued elsewhere (the identity provider); this module only
verifies them. The ``sub`` claim is the owner id every record is scoped
to. Nothing in a request body can change it.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings

# auto_error=False so a missing header yields our {"error": "unauthorized"} body
security = HTTPBearer(auto_error=False)


def create_access_token(
    owner_id: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT for an owner. Used by tests and local development."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {
        "sub": owner_id,
        "exp": expire,
        "iat": now,
    }
    if settings.jwt_audience:
        to_encode["aud"] = settings.jwt_audience
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        if settings.jwt_audience:
            return jwt.decode(
                token,
                settings.jwt_secret_key,
                algorithms=[settings.jwt_algorithm],
                audience=settings.jwt_audience,
            )
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        raise _unauthorized()


class AuthContext:
    """Authenticated caller."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id

    def __repr__(self) -> str:
        return f"AuthContext(owner_id={self.owner_id!r})"


async def get_current_owner(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthContext:
    """Resolve the bearer token to an owner id."""
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise _unauthorized()

    payload = decode_token(credentials.credentials, settings)
    owner_id = payload.get("sub")
    if not isinstance(owner_id, str) or not owner_id:
        raise _unauthorized()
    return AuthContext(owner_id=owner_id)


# Type alias for dependency injection
CurrentOwner = Annotated[AuthContext, Depends(get_current_owner)]
