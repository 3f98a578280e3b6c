"""
Authentication dependencies for FastAPI endpoints.

Identity is verified by Supabase auth (auth.get_user()); entitlement
operations only ever see the trusted user id it returns. Admin and scheduler
endpoints use a shared API key instead.
"""

import secrets
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from nufit.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return AuthenticatedUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


def ensure_own_account(user: AuthenticatedUser, user_id: str) -> None:
    """Users may only read or change their own entitlement."""
    if user.id != user_id:
        raise HTTPException(status_code=403, detail="You can only access your own subscription")


async def require_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    """Guard for admin and scheduler endpoints."""
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API key not configured")
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


AdminKey = Depends(require_api_key)
