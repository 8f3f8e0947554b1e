"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from src.utils.phone import InvalidPhoneError, normalize_phone


class PhoneRequest(BaseModel):
    """Base request carrying a phone number, normalised to 254XXXXXXXXX."""

    phone: str = Field(..., min_length=9, max_length=20, description="User's phone number (login identifier)")

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v):
        try:
            return normalize_phone(v)
        except InvalidPhoneError as e:
            raise ValueError(str(e))


class SignupRequest(PhoneRequest):
    """Request model for the signup endpoint."""

    name: Optional[str] = Field(None, max_length=100, description="Optional display name")

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None


class LoginRequest(PhoneRequest):
    """Request model for the login endpoint."""


class VerifyOTPRequest(PhoneRequest):
    """Request model for signup and login OTP verification."""

    otp_code: str = Field(..., description="6-digit code received by SMS")

    @field_validator('otp_code')
    @classmethod
    def validate_otp_code(cls, v):
        v = v.strip()
        if len(v) != 6 or not v.isdigit():
            raise ValueError('OTP code must be exactly 6 digits')
        return v


class UserPayload(BaseModel):
    id: UUID
    phone: str
    name: Optional[str] = None
    verified: bool


class SessionPayload(BaseModel):
    token: str
    expires_at: datetime


class SignupResponse(BaseModel):
    """Response model for the signup endpoint."""

    message: str
    user_id: UUID
    otp_expires_at: datetime
    next_step: str = "verify_otp"

    class Config:
        json_schema_extra = {
            "example": {
                "message": "Account created successfully! Check your phone for the OTP.",
                "user_id": "1f0e6a5e-0000-4000-8000-000000000001",
                "otp_expires_at": "2024-01-01T12:10:00Z",
                "next_step": "verify_otp"
            }
        }


class LoginResponse(BaseModel):
    """Response model for the login endpoint."""

    message: str
    user_id: UUID
    phone: str
    name: Optional[str] = None
    tokens_remaining: int
    otp_expires_at: datetime
    next_step: str = "verify_login_otp"


class SessionResponse(BaseModel):
    """Response model for successful OTP verification."""

    message: str
    user: UserPayload
    session: SessionPayload
    tokens_remaining: Optional[int] = None


class MeResponse(BaseModel):
    authenticated: bool = True
    user: UserPayload
    tokens: int
    session: Dict[str, datetime]


class RefreshResponse(BaseModel):
    success: bool
    message: str
    expires_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    message: str


class BalanceResponse(BaseModel):
    user_id: UUID
    balance: int


class ChargeResponse(BaseModel):
    action: str
    tokens_deducted: int
    tokens_remaining: int


class PaymentStatusResponse(BaseModel):
    found: bool
    receipt: Optional[str] = None
    checkout_request_id: Optional[str] = None
    amount: Optional[float] = None
    tokens_added: Optional[int] = None


class STKCallbackItem(BaseModel):
    Name: str
    Value: Optional[Any] = None


class STKCallbackMetadata(BaseModel):
    Item: List[STKCallbackItem] = Field(default_factory=list)


class STKCallback(BaseModel):
    """The stkCallback object of an M-PESA STK push result notification."""

    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: Optional[str] = None
    CallbackMetadata: Optional[STKCallbackMetadata] = None

    def metadata_value(self, name: str) -> Optional[Any]:
        if self.CallbackMetadata is None:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None


class STKCallbackBody(BaseModel):
    stkCallback: STKCallback


class STKCallbackEnvelope(BaseModel):
    Body: STKCallbackBody


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    code: str = Field(..., description="Machine-readable error kind")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")
    details: Optional[Dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "error": "InsufficientTokensError",
                "code": "insufficient_tokens",
                "message": "Insufficient tokens for login: 1 required, 0 available. Please purchase tokens to continue.",
                "correlation_id": "req_123456789",
                "timestamp": "2024-01-01T12:00:00Z",
                "details": {"required": 1, "balance": 0, "action": "login"}
            }
        }
