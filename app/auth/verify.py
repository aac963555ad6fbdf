"""
verify.py
---------
Purpose:
    Bearer token verification shared by the HTTP API and the WebSocket
    handshake.

Notes:
    - HS256 with JWT_SECRET by default.
    - When JWT_JWKS_URL is set, keys are fetched (and cached) from the JWKS
      endpoint and ES256 tokens are accepted instead.
    - The user id comes from `sub` (or `userId`), the role from `role`.
    - Provides `auth_dependency` for protected routes.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from app.config import settings
from app.models.domain.user_domain import Principal, Role

_security = HTTPBearer(auto_error=False)
_jwk_client: PyJWKClient | None = None


class AuthenticationError(Exception):
    """The presented credential could not be verified."""


def _get_jwk_client() -> PyJWKClient:
    global _jwk_client
    if _jwk_client is None:
        _jwk_client = PyJWKClient(settings.JWT_JWKS_URL)
    return _jwk_client


def _decode(token: str) -> dict:
    options = {"verify_exp": True, "verify_aud": bool(settings.JWT_AUDIENCE)}

    if settings.JWT_JWKS_URL:
        signing_key = _get_jwk_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )

    if not settings.JWT_SECRET:
        raise AuthenticationError("Token verification is not configured")

    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.JWT_AUDIENCE,
        options=options,
    )


def verify_token(token: str | None) -> Principal:
    """
    Resolve a bearer token to the acting user.

    Raises:
        AuthenticationError: missing, expired, malformed or unsigned token,
            or claims without a user id / known role.
    """
    if not token:
        raise AuthenticationError("Authentication token required")

    try:
        claims = _decode(token)
    except jwt.PyJWTError as e:
        raise AuthenticationError(f"Invalid authentication token: {e}") from e

    user_id = claims.get("sub") or claims.get("userId")
    if not user_id:
        raise AuthenticationError("Token has no subject")

    try:
        role = Role.parse(claims.get("role"))
    except ValueError as e:
        raise AuthenticationError(str(e)) from e

    return Principal(user_id=str(user_id), role=role)


def auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> Principal:
    try:
        return verify_token(credentials.credentials if credentials else None)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
