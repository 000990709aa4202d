"""Bearer token handling standing in for the platform's auth middleware."""

from __future__ import annotations

from datetime import timedelta

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from skillchat.config import Settings, get_settings
from skillchat.models.base import utcnow

_bearer = HTTPBearer(auto_error=False)


class TokenError(ValueError):
    """Raised when a bearer token is missing, expired, or carries no subject."""


def decode_principal(token: str | None, settings: Settings | None = None) -> str:
    """Return the `sub` claim of a valid token."""

    if not token:
        raise TokenError("Missing bearer token")
    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenError(f"Invalid token: {exc}") from exc

    subject = payload.get("sub")
    if not subject:
        raise TokenError("Token missing user ID")
    return str(subject)


def create_access_token(
    user_id: str,
    settings: Settings | None = None,
    *,
    expires_in: timedelta = timedelta(hours=12),
) -> str:
    """Mint a token for local tooling and tests."""

    settings = settings or get_settings()
    now = utcnow()
    claims: dict[str, object] = {"sub": user_id, "iat": now, "exp": now + expires_in}
    if settings.jwt_audience is not None:
        claims["aud"] = settings.jwt_audience
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def bearer_from_header(value: str | None) -> str | None:
    if not value:
        return None
    scheme, _, credentials = value.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> str:
    """Resolve the authenticated principal id for REST routes."""

    try:
        return decode_principal(credentials.credentials if credentials else None, settings)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
