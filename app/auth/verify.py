"""
verify.py
---------
Purpose:
    JWT verification using Supabase JWKS (ES256), plus the role and
    shared-secret checks used by the calendar source routes.

Notes:
    - Fetches JWKS from Supabase and caches keys.
    - `auth_dependency` for any signed-in member.
    - `require_reviewer` for allowlist review routes (app_metadata.role).
    - `verify_cron_secret` for the internal sync trigger.
"""

import hmac

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from app.config import settings

SUPABASE_AUDIENCE = "authenticated"

_jwk_client = PyJWKClient(settings.jwks_url())
_security = HTTPBearer()


def verify_jwt(token: str) -> dict:
    try:
        signing_key = _jwk_client.get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],  # Supabase signs with ES256
            audience=SUPABASE_AUDIENCE,
            options={"verify_exp": True},
        )
        return decoded
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def require_reviewer(claims: dict = Depends(auth_dependency)) -> dict:
    """Only members carrying the reviewer role may change allowlist state."""
    app_metadata = claims.get("app_metadata") or {}
    if app_metadata.get("role") != settings.ALLOWLIST_REVIEWER_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Allowlist reviewer role required",
        )
    return claims


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Check `Authorization: Bearer <CRON_SECRET>` with a constant-time compare."""
    expected = settings.CRON_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="CRON_SECRET not configured",
        )

    provided = authorization or ""
    if not hmac.compare_digest(provided.encode(), f"Bearer {expected}".encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
