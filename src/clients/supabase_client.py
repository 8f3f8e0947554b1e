"""Supabase client for the credential, ledger, session and payment stores."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from supabase import create_client, Client
from postgrest.exceptions import APIError

from ..config import settings
from ..errors import StorageError
from ..models.internal_models import AuthenticatedSession, Payment, Session, TokenBalance, User
from ..utils.phone import mask_phone
from ..utils.security import mask_token

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, phone, name, verified, otp_code, otp_expires_at, last_login, created_at"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=UUID(str(row["id"])),
        phone=row["phone"],
        name=row.get("name"),
        verified=bool(row.get("verified", False)),
        otp_code=row.get("otp_code"),
        otp_expires_at=_parse_timestamp(row.get("otp_expires_at")),
        last_login=_parse_timestamp(row.get("last_login")),
        created_at=_parse_timestamp(row.get("created_at")),
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=row.get("id"),
        token=row["session_token"],
        user_id=UUID(str(row["user_id"])),
        expires_at=_parse_timestamp(row["expires_at"]),
    )


def _payment_from_row(row: Dict[str, Any]) -> Payment:
    return Payment(
        id=row.get("id"),
        receipt=row["mpesa_receipt"],
        user_id=UUID(str(row["user_id"])),
        amount=float(row["amount"]),
        tokens_added=int(row["tokens_added"]),
        checkout_request_id=row.get("checkout_request_id"),
        transaction_date=row.get("transaction_date"),
        created_at=_parse_timestamp(row.get("created_at")),
    )


class SupabaseClient:
    """Client for Supabase database operations."""

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None):
        """Initialize Supabase client with configuration."""
        self._client: Optional[Client] = None
        self._url = url or settings.supabase_url
        self._key = key or settings.supabase_service_role_key

    @property
    def client(self) -> Client:
        """Get or create Supabase client instance."""
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    async def execute(self, query, operation: str):
        """
        Run a PostgREST query builder off the event loop.

        Raises:
            StorageError: If PostgREST or the transport fails
        """
        try:
            return await asyncio.to_thread(query.execute)
        except APIError as e:
            logger.error(f"Database error during {operation}: {e}")
            raise StorageError(f"Database error during {operation}") from e
        except Exception as e:
            logger.error(f"Unexpected error during {operation}: {e}")
            raise StorageError(f"Unexpected storage failure during {operation}") from e

    async def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            await self.execute(
                self.client.table("users").select("id", count="exact").limit(0),
                "health check"
            )
            return True
        except StorageError as e:
            logger.error(f"Database health check failed: {e}")
            return False


class UserRepository:
    """Credential store: user identity and pending OTP fields."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    @property
    def _table(self):
        return self.client.client.table("users")

    async def get_by_phone(self, phone: str) -> Optional[User]:
        result = await self.client.execute(
            self._table.select(USER_COLUMNS).eq("phone", phone).limit(1),
            "user lookup by phone"
        )
        if not result.data:
            return None
        return _user_from_row(result.data[0])

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.client.execute(
            self._table.select(USER_COLUMNS).eq("id", str(user_id)).limit(1),
            "user lookup by id"
        )
        if not result.data:
            return None
        return _user_from_row(result.data[0])

    async def create_with_grant(
        self,
        phone: str,
        name: Optional[str],
        otp_code: str,
        otp_expires_at: datetime,
        grant: int
    ) -> Optional[User]:
        """
        Insert an unverified user and its opening token balance in one transaction.

        Returns:
            The new user, or None if the phone was registered concurrently
        """
        result = await self.client.execute(
            self.client.client.rpc("create_user_with_grant", {
                "p_phone": phone,
                "p_name": name,
                "p_otp_code": otp_code,
                "p_otp_expires_at": otp_expires_at.isoformat(),
                "p_grant": grant,
            }),
            "user creation"
        )
        rows = result.data if isinstance(result.data, list) else [result.data]
        if not rows or not rows[0]:
            logger.info(f"Phone {mask_phone(phone)} already registered, no user created")
            return None

        user = _user_from_row(rows[0])
        logger.info(f"Created user {user.id} for phone {mask_phone(phone)} with {grant} tokens")
        return user

    async def set_otp(
        self,
        user_id: UUID,
        otp_code: str,
        otp_expires_at: datetime,
        issued_at: datetime,
        name: Optional[str] = None
    ) -> None:
        update: Dict[str, Any] = {
            "otp_code": otp_code,
            "otp_expires_at": otp_expires_at.isoformat(),
            "updated_at": issued_at.isoformat(),
        }
        if name is not None:
            update["name"] = name

        result = await self.client.execute(
            self._table.update(update).eq("id", str(user_id)),
            "OTP issue"
        )
        if not result.data:
            raise StorageError(f"User {user_id} disappeared while issuing OTP")

    async def consume_otp(
        self,
        user_id: UUID,
        otp_code: str,
        now: datetime,
        mark_verified: bool
    ) -> bool:
        """
        Clear a matching, unexpired OTP in a single conditional update.

        Returns:
            True if this call consumed the code, False if it no longer matched
        """
        update: Dict[str, Any] = {
            "otp_code": None,
            "otp_expires_at": None,
            "last_login": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        if mark_verified:
            update["verified"] = True

        query = (
            self._table.update(update)
            .eq("id", str(user_id))
            .eq("otp_code", otp_code)
            .gt("otp_expires_at", now.isoformat())
            .eq("verified", "false" if mark_verified else "true")
        )

        result = await self.client.execute(query, "OTP verification")
        return bool(result.data)

    async def delete_pending(self, user_id: UUID, otp_code: str) -> bool:
        """
        Delete an unverified user whose pending OTP is still otp_code.

        Its token balance and sessions cascade. A user that was verified or
        re-issued a different code in the meantime is left alone.
        """
        result = await self.client.execute(
            self._table.delete()
            .eq("id", str(user_id))
            .eq("otp_code", otp_code)
            .eq("verified", "false"),
            "pending user deletion"
        )
        success = len(result.data or []) > 0
        if success:
            logger.info(f"Deleted pending user {user_id}")
        else:
            logger.warning(f"Pending user {user_id} changed since its OTP was issued, not deleted")
        return success


class TokenLedgerRepository:
    """
    Token ledger backed by the user_tokens table.

    Balance mutations go through database functions so that each one is a
    single statement; the application never writes a balance it has read.
    """

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def get_balance(self, user_id: UUID) -> Optional[TokenBalance]:
        result = await self.client.execute(
            self.client.client.table("user_tokens")
            .select("user_id, balance, updated_at")
            .eq("user_id", str(user_id))
            .limit(1),
            "balance lookup"
        )
        if not result.data:
            return None
        row = result.data[0]
        return TokenBalance(
            user_id=UUID(str(row["user_id"])),
            balance=int(row["balance"]),
            updated_at=_parse_timestamp(row.get("updated_at")),
        )

    async def debit(self, user_id: UUID, amount: int) -> Optional[int]:
        """
        Conditionally decrement the balance.

        Returns:
            The new balance, or None if the balance was insufficient
        """
        result = await self.client.execute(
            self.client.client.rpc("debit_tokens", {"p_user_id": str(user_id), "p_amount": amount}),
            "token debit"
        )
        if result.data is None:
            return None
        return int(result.data)

    async def credit(self, user_id: UUID, amount: int) -> int:
        """Atomically increment the balance and return the new value."""
        result = await self.client.execute(
            self.client.client.rpc("credit_tokens", {"p_user_id": str(user_id), "p_amount": amount}),
            "token credit"
        )
        if result.data is None:
            raise StorageError(f"Credit for user {user_id} returned no balance")
        return int(result.data)


class SessionRepository:
    """Session store for bearer tokens."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    @property
    def _table(self):
        return self.client.client.table("user_sessions")

    async def replace_for_user(self, user_id: UUID, token: str, expires_at: datetime) -> Session:
        """Delete every session of the user and insert the new one in one transaction."""
        result = await self.client.execute(
            self.client.client.rpc("replace_user_session", {
                "p_user_id": str(user_id),
                "p_session_token": token,
                "p_expires_at": expires_at.isoformat(),
            }),
            "session replacement"
        )
        session_id = result.data if isinstance(result.data, int) else None
        logger.info(f"Created session {mask_token(token)} for user {user_id}")
        return Session(id=session_id, token=token, user_id=user_id, expires_at=expires_at)

    async def get_valid(self, token: str, now: datetime) -> Optional[AuthenticatedSession]:
        result = await self.client.execute(
            self._table.select(
                f"id, user_id, session_token, expires_at, users:user_id ({USER_COLUMNS})"
            )
            .eq("session_token", token)
            .gt("expires_at", now.isoformat())
            .limit(1),
            "session lookup"
        )
        if not result.data:
            return None

        row = result.data[0]
        user_row = row.get("users")
        if not user_row:
            return None
        return AuthenticatedSession(session=_session_from_row(row), user=_user_from_row(user_row))

    async def extend(self, token: str, now: datetime, expires_at: datetime) -> bool:
        """Move the expiry of a still-valid session; the row and token are unchanged."""
        result = await self.client.execute(
            self._table.update({"expires_at": expires_at.isoformat()})
            .eq("session_token", token)
            .gt("expires_at", now.isoformat()),
            "session refresh"
        )
        return bool(result.data)

    async def delete(self, token: str) -> bool:
        result = await self.client.execute(
            self._table.delete().eq("session_token", token),
            "session deletion"
        )
        return bool(result.data)

    async def delete_expired(self, now: datetime) -> int:
        result = await self.client.execute(
            self._table.delete().lte("expires_at", now.isoformat()),
            "expired session cleanup"
        )
        return len(result.data or [])


class PaymentRepository:
    """Audit trail of completed mobile-money payments."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def record_and_credit(self, payment: Payment) -> bool:
        """
        Insert the payment and credit its tokens in one transaction.

        Returns:
            False if the receipt was already recorded (replayed callback)
        """
        result = await self.client.execute(
            self.client.client.rpc("record_payment_credit", {
                "p_user_id": str(payment.user_id),
                "p_mpesa_receipt": payment.receipt,
                "p_checkout_request_id": payment.checkout_request_id,
                "p_amount": payment.amount,
                "p_tokens": payment.tokens_added,
                "p_transaction_date": payment.transaction_date,
            }),
            "payment credit"
        )
        return bool(result.data)

    async def find_for_user(self, user_id: UUID, reference: str) -> Optional[Payment]:
        """Look up a payment by M-PESA receipt or checkout request id."""
        result = await self.client.execute(
            self.client.client.table("payments")
            .select("*")
            .eq("user_id", str(user_id))
            .or_(f"mpesa_receipt.eq.{reference},checkout_request_id.eq.{reference}")
            .limit(1),
            "payment lookup"
        )
        if not result.data:
            return None
        return _payment_from_row(result.data[0])


class DatabaseManager:
    """High-level database manager that coordinates repositories."""

    def __init__(self, client: Optional[SupabaseClient] = None):
        """Initialize database manager with client and repositories."""
        self.client = client or SupabaseClient()
        self.users = UserRepository(self.client)
        self.tokens = TokenLedgerRepository(self.client)
        self.sessions = SessionRepository(self.client)
        self.payments = PaymentRepository(self.client)

    async def health_check(self) -> bool:
        """Check overall database health."""
        return await self.client.health_check()
