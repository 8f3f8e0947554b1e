"""Internal data models for the auth and token ledger core."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID


@dataclass
class User:
    """Identity record; phone is the natural key for authentication."""

    id: UUID
    phone: str
    verified: bool
    name: Optional[str] = None
    otp_code: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def has_pending_otp(self) -> bool:
        return self.otp_code is not None

    def otp_expired(self, now: datetime) -> bool:
        """An OTP without an expiry is treated as already expired."""
        return self.otp_expires_at is None or now >= self.otp_expires_at


@dataclass
class TokenBalance:
    """Prepaid token balance, one row per user."""

    user_id: UUID
    balance: int
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.balance < 0:
            raise ValueError(f"Token balance cannot be negative, got {self.balance}")


@dataclass
class Session:
    """Bearer session bound to a user."""

    token: str
    user_id: UUID
    expires_at: datetime
    id: Optional[int] = None  # Database-generated ID

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuthenticatedSession:
    """A session that passed validation, joined to its owner."""

    session: Session
    user: User


@dataclass
class Payment:
    """A completed mobile-money top-up."""

    receipt: str
    user_id: UUID
    amount: float
    tokens_added: int
    checkout_request_id: Optional[str] = None
    transaction_date: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class SMSResult:
    """Outcome of one SMS gateway call."""

    success: bool
    provider_reference: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class SignupResult:
    user_id: UUID
    phone: str
    otp_expires_at: datetime
    resent: bool = False  # True when an unverified user retried signup


@dataclass
class LoginChallenge:
    user_id: UUID
    phone: str
    name: Optional[str]
    otp_expires_at: datetime
    tokens_remaining: int


@dataclass
class SessionGrant:
    """Issued after a successful OTP verification."""

    user: User
    token: str
    expires_at: datetime
    tokens_remaining: Optional[int] = None
