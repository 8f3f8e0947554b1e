"""
Shared fixtures: in-memory stores with the same conditional-update semantics
as the database functions, a fake SMS gateway and a controllable clock.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

import pytest

from src.config import Settings
from src.errors import StorageError
from src.models.internal_models import AuthenticatedSession, Payment, Session, SMSResult, TokenBalance, User
from src.services.context import ServiceContext, build_services


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MemoryDatabase:
    """Rows shared by the in-memory stores."""

    def __init__(self):
        self.users: Dict[UUID, User] = {}
        self.balances: Dict[UUID, int] = {}
        self.sessions: Dict[str, Session] = {}
        self.payments: Dict[str, Payment] = {}
        self.lock = asyncio.Lock()

    def user_by_phone(self, phone: str) -> Optional[User]:
        for user in self.users.values():
            if user.phone == phone:
                return user
        return None


class MemoryUserStore:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def get_by_phone(self, phone: str) -> Optional[User]:
        user = self.db.user_by_phone(phone)
        # Yield after the read like a round trip; concurrent signups can both miss the row.
        await asyncio.sleep(0)
        return replace(user) if user else None

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        user = self.db.users.get(user_id)
        return replace(user) if user else None

    async def create_with_grant(self, phone, name, otp_code, otp_expires_at, grant) -> Optional[User]:
        async with self.db.lock:
            if self.db.user_by_phone(phone) is not None:
                return None
            user = User(
                id=uuid4(),
                phone=phone,
                name=name,
                verified=False,
                otp_code=otp_code,
                otp_expires_at=otp_expires_at,
            )
            self.db.users[user.id] = user
            self.db.balances[user.id] = grant
            return replace(user)

    async def set_otp(self, user_id, otp_code, otp_expires_at, issued_at, name=None) -> None:
        user = self.db.users.get(user_id)
        if user is None:
            raise StorageError(f"User {user_id} disappeared while issuing OTP")
        user.otp_code = otp_code
        user.otp_expires_at = otp_expires_at
        if name is not None:
            user.name = name

    async def consume_otp(self, user_id, otp_code, now, mark_verified) -> bool:
        async with self.db.lock:
            user = self.db.users.get(user_id)
            if (
                user is None
                or user.otp_code != otp_code
                or user.otp_expires_at is None
                or user.otp_expires_at <= now
                or user.verified == mark_verified
            ):
                return False
            user.otp_code = None
            user.otp_expires_at = None
            user.last_login = now
            if mark_verified:
                user.verified = True
            return True

    async def delete_pending(self, user_id, otp_code) -> bool:
        user = self.db.users.get(user_id)
        if user is None or user.verified or user.otp_code != otp_code:
            return False
        del self.db.users[user_id]
        self.db.balances.pop(user_id, None)
        for token in [t for t, s in self.db.sessions.items() if s.user_id == user_id]:
            del self.db.sessions[token]
        return True


class MemoryTokenStore:
    def __init__(self, db: MemoryDatabase):
        self.db = db
        self._lock = asyncio.Lock()

    async def get_balance(self, user_id) -> Optional[TokenBalance]:
        if user_id not in self.db.balances:
            return None
        return TokenBalance(user_id=user_id, balance=self.db.balances[user_id])

    async def debit(self, user_id, amount) -> Optional[int]:
        async with self._lock:
            balance = self.db.balances.get(user_id)
            # Yield mid-update; the lock is what keeps this a single statement.
            await asyncio.sleep(0)
            if balance is None or balance < amount:
                return None
            self.db.balances[user_id] = balance - amount
            return self.db.balances[user_id]

    async def credit(self, user_id, amount) -> int:
        async with self._lock:
            balance = self.db.balances.get(user_id, 0)
            await asyncio.sleep(0)
            self.db.balances[user_id] = balance + amount
            return self.db.balances[user_id]


class MemorySessionStore:
    def __init__(self, db: MemoryDatabase):
        self.db = db
        self.reap_calls = 0

    async def replace_for_user(self, user_id, token, expires_at) -> Session:
        async with self.db.lock:
            for existing in [t for t, s in self.db.sessions.items() if s.user_id == user_id]:
                del self.db.sessions[existing]
            session = Session(token=token, user_id=user_id, expires_at=expires_at, id=len(self.db.sessions) + 1)
            self.db.sessions[token] = session
            return replace(session)

    async def get_valid(self, token, now) -> Optional[AuthenticatedSession]:
        session = self.db.sessions.get(token)
        if session is None or session.expires_at <= now:
            return None
        user = self.db.users.get(session.user_id)
        if user is None:
            return None
        return AuthenticatedSession(session=replace(session), user=replace(user))

    async def extend(self, token, now, expires_at) -> bool:
        session = self.db.sessions.get(token)
        if session is None or session.expires_at <= now:
            return False
        session.expires_at = expires_at
        return True

    async def delete(self, token) -> bool:
        return self.db.sessions.pop(token, None) is not None

    async def delete_expired(self, now) -> int:
        self.reap_calls += 1
        expired = [t for t, s in self.db.sessions.items() if s.expires_at <= now]
        for token in expired:
            del self.db.sessions[token]
        return len(expired)


class MemoryPaymentStore:
    def __init__(self, db: MemoryDatabase, tokens: MemoryTokenStore):
        self.db = db
        self.tokens = tokens

    async def record_and_credit(self, payment: Payment) -> bool:
        async with self.db.lock:
            if payment.receipt in self.db.payments:
                return False
            self.db.payments[payment.receipt] = replace(payment)
        await self.tokens.credit(payment.user_id, payment.tokens_added)
        return True

    async def find_for_user(self, user_id, reference) -> Optional[Payment]:
        for payment in self.db.payments.values():
            if payment.user_id == user_id and reference in (payment.receipt, payment.checkout_request_id):
                return replace(payment)
        return None


class FakeSMSGateway:
    """Records messages; can be told to fail, raise or hang."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []
        self.fail = False
        self.error: Optional[Exception] = None
        self.delay: float = 0.0

    async def send(self, recipient: str, message: str) -> SMSResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.fail:
            return SMSResult(success=False, reason="gateway rejected message")
        self.sent.append((recipient, message))
        return SMSResult(success=True, provider_reference=f"msg-{len(self.sent)}")


@pytest.fixture
def test_settings():
    """Settings with short timeouts and the default prices."""
    return Settings(sms_timeout_seconds=0.2, otlp_endpoint=None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_db():
    return MemoryDatabase()


@pytest.fixture
def sms_gateway():
    return FakeSMSGateway()


@pytest.fixture
def service_context(memory_db, sms_gateway, test_settings, clock):
    """A ServiceContext wired to the in-memory stores."""
    tokens = MemoryTokenStore(memory_db)
    return ServiceContext(
        users=MemoryUserStore(memory_db),
        tokens=tokens,
        sessions=MemorySessionStore(memory_db),
        payments=MemoryPaymentStore(memory_db, tokens),
        sms=sms_gateway,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def services(service_context):
    return build_services(service_context)


@pytest.fixture
def sample_phone():
    return "254712345678"


@pytest.fixture
def make_verified_user(memory_db):
    """Insert a verified user directly, bypassing signup."""

    def _make(phone: str, balance: int, name: str = "Amina") -> User:
        user = User(id=uuid4(), phone=phone, name=name, verified=True)
        memory_db.users[user.id] = user
        memory_db.balances[user.id] = balance
        return user

    return _make
