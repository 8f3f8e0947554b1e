"""Store and gateway protocols; services depend on these, not the Supabase or Wasiliana classes."""

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from src.models.internal_models import AuthenticatedSession, Payment, Session, SMSResult, TokenBalance, User


class UserStore(Protocol):
    async def get_by_phone(self, phone: str) -> Optional[User]: ...

    async def get_by_id(self, user_id: UUID) -> Optional[User]: ...

    async def create_with_grant(
        self, phone: str, name: Optional[str], otp_code: str, otp_expires_at: datetime, grant: int
    ) -> Optional[User]: ...

    async def set_otp(
        self, user_id: UUID, otp_code: str, otp_expires_at: datetime, issued_at: datetime,
        name: Optional[str] = None
    ) -> None: ...

    async def consume_otp(self, user_id: UUID, otp_code: str, now: datetime, mark_verified: bool) -> bool: ...

    async def delete_pending(self, user_id: UUID, otp_code: str) -> bool: ...


class TokenStore(Protocol):
    async def get_balance(self, user_id: UUID) -> Optional[TokenBalance]: ...

    async def debit(self, user_id: UUID, amount: int) -> Optional[int]: ...

    async def credit(self, user_id: UUID, amount: int) -> int: ...


class SessionStore(Protocol):
    async def replace_for_user(self, user_id: UUID, token: str, expires_at: datetime) -> Session: ...

    async def get_valid(self, token: str, now: datetime) -> Optional[AuthenticatedSession]: ...

    async def extend(self, token: str, now: datetime, expires_at: datetime) -> bool: ...

    async def delete(self, token: str) -> bool: ...

    async def delete_expired(self, now: datetime) -> int: ...


class PaymentStore(Protocol):
    async def record_and_credit(self, payment: Payment) -> bool: ...

    async def find_for_user(self, user_id: UUID, reference: str) -> Optional[Payment]: ...


class SMSGateway(Protocol):
    async def send(self, recipient: str, message: str) -> SMSResult: ...
