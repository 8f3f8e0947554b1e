"""
Authentication API endpoints for phone OTP signup, login and sessions.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response

from src.api.dependencies import (
    clear_session_cookie,
    get_services,
    get_session_token,
    require_session,
    set_session_cookie,
)
from src.errors import ServiceError
from src.models.api_models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshResponse,
    SessionPayload,
    SessionResponse,
    SignupRequest,
    SignupResponse,
    UserPayload,
    VerifyOTPRequest,
)
from src.models.internal_models import AuthenticatedSession, SessionGrant, User
from src.observability import record_auth_metrics, trace_function
from src.services.context import Services
from src.utils.phone import mask_phone

logger = structlog.get_logger()
router = APIRouter(prefix="/api/auth", tags=["authentication"])


def _user_payload(user: User) -> UserPayload:
    return UserPayload(id=user.id, phone=user.phone, name=user.name, verified=user.verified)


def _session_response(grant: SessionGrant, message: str) -> SessionResponse:
    return SessionResponse(
        message=message,
        user=_user_payload(grant.user),
        session=SessionPayload(token=grant.token, expires_at=grant.expires_at),
        tokens_remaining=grant.tokens_remaining,
    )


async def _run(operation: str, call):
    """Await a service call and record its outcome."""
    start_time = time.time()
    try:
        result = await call
    except ServiceError as e:
        record_auth_metrics(operation, e.kind.value, time.time() - start_time)
        raise
    record_auth_metrics(operation, "success", time.time() - start_time)
    return result


@router.post("/signup", response_model=SignupResponse)
@trace_function("signup_endpoint")
async def signup(request: SignupRequest, services: Services = Depends(get_services)) -> SignupResponse:
    """
    Register a phone number and send the signup OTP.

    New accounts start with the signup token grant. Retrying for a phone that
    never completed verification re-sends a fresh code.
    """
    logger.info("Signup request received", phone=mask_phone(request.phone))

    result = await _run("signup", services.auth.signup(request.phone, request.name))

    message = (
        "Account found! OTP sent to your phone for verification."
        if result.resent
        else "Account created successfully! Check your phone for the OTP."
    )
    return SignupResponse(message=message, user_id=result.user_id, otp_expires_at=result.otp_expires_at)


@router.post("/verify-otp", response_model=SessionResponse)
@trace_function("verify_signup_endpoint")
async def verify_signup_otp(
    request: VerifyOTPRequest,
    response: Response,
    services: Services = Depends(get_services)
) -> SessionResponse:
    """Verify the signup OTP, mark the account verified and start a session."""
    logger.info("Signup verification request received", phone=mask_phone(request.phone))

    grant = await _run("verify_signup", services.auth.verify_signup_otp(request.phone, request.otp_code))

    set_session_cookie(response, grant.token, grant.expires_at, services.context.settings)
    return _session_response(grant, "Account verified successfully")


@router.post("/login", response_model=LoginResponse)
@trace_function("login_endpoint")
async def login(request: LoginRequest, services: Services = Depends(get_services)) -> LoginResponse:
    """
    Start a login. Costs the login price in tokens, refunded if the SMS fails.
    """
    logger.info("Login request received", phone=mask_phone(request.phone))

    challenge = await _run("login", services.auth.login(request.phone))

    cost = services.ledger.price_of("login")
    return LoginResponse(
        message=f"Login OTP sent to your phone! ({cost} token{'s' if cost != 1 else ''} deducted)",
        user_id=challenge.user_id,
        phone=challenge.phone,
        name=challenge.name,
        tokens_remaining=challenge.tokens_remaining,
        otp_expires_at=challenge.otp_expires_at,
    )


@router.post("/verify-login", response_model=SessionResponse)
@trace_function("verify_login_endpoint")
async def verify_login_otp(
    request: VerifyOTPRequest,
    response: Response,
    services: Services = Depends(get_services)
) -> SessionResponse:
    """Verify the login OTP and replace any existing session."""
    logger.info("Login verification request received", phone=mask_phone(request.phone))

    grant = await _run("verify_login", services.auth.verify_login_otp(request.phone, request.otp_code))

    set_session_cookie(response, grant.token, grant.expires_at, services.context.settings)
    return _session_response(grant, "Logged in successfully!")


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    token: Optional[str] = Depends(get_session_token),
    services: Services = Depends(get_services)
) -> MessageResponse:
    """Delete the caller's session. Always succeeds."""
    await services.auth.logout(token)
    record_auth_metrics("logout", "success")

    clear_session_cookie(response, services.context.settings)
    return MessageResponse(message="Logged out successfully")


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    token: Optional[str] = Depends(get_session_token),
    services: Services = Depends(get_services)
) -> RefreshResponse:
    """Extend the caller's session expiry."""
    refreshed = await services.auth.refresh_session(token)
    record_auth_metrics("refresh", "success" if refreshed else "invalid_session")

    if not refreshed:
        raise HTTPException(status_code=401, detail={"error": "Unauthorized", "message": "Invalid session"})

    authenticated = await services.auth.validate_session(token)
    return RefreshResponse(
        success=True,
        message="Session refreshed successfully",
        expires_at=authenticated.session.expires_at if authenticated else None,
    )


@router.get("/validate-session")
async def validate_session(
    token: Optional[str] = Depends(get_session_token),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Report whether the presented session token is valid, without refreshing it."""
    authenticated = await services.auth.validate_session(token)
    if authenticated is None:
        return {"valid": False}

    return {
        "valid": True,
        "user_id": str(authenticated.user.id),
        "expires_at": authenticated.session.expires_at.isoformat(),
    }


@router.get("/me", response_model=MeResponse)
async def me(
    authenticated: AuthenticatedSession = Depends(require_session),
    services: Services = Depends(get_services)
) -> MeResponse:
    """Current user, token balance and session expiry. Refreshes the session."""
    balance = await services.auth.get_balance(authenticated.user.id)

    expires_at = authenticated.session.expires_at
    if await services.auth.refresh_session(authenticated.session.token):
        expires_at = services.context.clock() + services.auth.session_ttl

    return MeResponse(
        user=_user_payload(authenticated.user),
        tokens=balance,
        session={"expires_at": expires_at},
    )


@router.get("/health", response_model=Dict[str, Any])
async def auth_health_check(http_request: Request) -> Dict[str, Any]:
    """
    Health check endpoint specific to the authentication backend.

    Returns:
        Dict with service health status and component checks
    """
    services: Services = http_request.app.state.services
    health_check = services.context.health_check

    try:
        db_healthy = await health_check() if health_check else True
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        db_healthy = False

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "database": {
                "status": "healthy" if db_healthy else "unhealthy",
                "details": "Database connectivity check"
            }
        }
    }
