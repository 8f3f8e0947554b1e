"""
FastAPI dependencies: service lookup, session token transport and auth guard.
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response

from src.config import Settings
from src.models.internal_models import AuthenticatedSession
from src.services.context import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(services: Services = Depends(get_services)) -> Settings:
    return services.context.settings


def get_session_token(request: Request, settings: Settings = Depends(get_settings)) -> Optional[str]:
    """Read the session token from the cookie, falling back to a Bearer header."""
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token

    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


async def require_session(
    token: Optional[str] = Depends(get_session_token),
    services: Services = Depends(get_services)
) -> AuthenticatedSession:
    """Resolve the caller's session or fail with 401."""
    if not token:
        raise HTTPException(status_code=401, detail={"error": "Unauthorized", "message": "Not signed in"})

    authenticated = await services.auth.validate_session(token)
    if authenticated is None:
        raise HTTPException(status_code=401, detail={"error": "Unauthorized", "message": "Invalid session"})
    return authenticated


def set_session_cookie(response: Response, token: str, expires_at: datetime, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        expires=expires_at,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )
