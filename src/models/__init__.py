"""Data models for the SmartPlanner auth and token service."""

from .api_models import (
    SignupRequest,
    SignupResponse,
    LoginRequest,
    LoginResponse,
    VerifyOTPRequest,
    SessionResponse,
    HealthResponse,
    ErrorResponse
)
from .internal_models import (
    User,
    TokenBalance,
    Session,
    AuthenticatedSession,
    Payment,
    SMSResult
)

__all__ = [
    "SignupRequest",
    "SignupResponse",
    "LoginRequest",
    "LoginResponse",
    "VerifyOTPRequest",
    "SessionResponse",
    "HealthResponse",
    "ErrorResponse",
    "User",
    "TokenBalance",
    "Session",
    "AuthenticatedSession",
    "Payment",
    "SMSResult"
]
