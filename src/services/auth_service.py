"""
Phone OTP authentication service.

This module provides the signup, login and session workflows:
- Signup issues a signup OTP and a starting token grant, all-or-nothing
- Login debits the login price, issues a login OTP and refunds the debit if
  the OTP cannot be stored or delivered
- OTP verification consumes the code and replaces the user's session
- Session validation, refresh and logout
"""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Set
from uuid import UUID

from src.clients.sms_client import login_message, signup_message
from src.errors import (
    AlreadyExistsError,
    AlreadyVerifiedError,
    DispatchFailedError,
    ExpiredError,
    InsufficientTokensError,
    InvalidCodeError,
    NotFoundError,
    ServiceError,
    StorageError,
    UnverifiedError,
)
from src.models.internal_models import (
    AuthenticatedSession,
    LoginChallenge,
    SessionGrant,
    SignupResult,
    SMSResult,
    User,
)
from src.observability import record_otp_dispatch, trace_function
from src.services.context import ServiceContext
from src.services.token_ledger import LOGIN, TokenLedger
from src.utils.phone import mask_phone
from src.utils.security import generate_otp, generate_session_token, mask_token

logger = logging.getLogger(__name__)

REAP_INTERVAL = timedelta(seconds=60)


class AuthenticationService:
    """
    Signup, login and session state machine.

    A user moves Unregistered -> PendingVerification -> Verified, and while
    verified alternates between logged out and logged in. OTP challenges are
    entered from PendingVerification (signup) and from logged out (login).
    """

    def __init__(self, context: ServiceContext, ledger: Optional[TokenLedger] = None):
        """
        Initialize authentication service.

        Args:
            context: Stores, SMS gateway and settings
            ledger: Token ledger; built from the context if omitted
        """
        self.users = context.users
        self.sessions = context.sessions
        self.sms = context.sms
        self.settings = context.settings
        self.clock = context.clock
        self.ledger = ledger or TokenLedger(context)

        self._last_reap: Optional[datetime] = None
        self._background_tasks: Set[asyncio.Task] = set()

        logger.info(
            f"Authentication service initialized: otp_ttl={self.otp_ttl}, session_ttl={self.session_ttl}"
        )

    @property
    def otp_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.otp_ttl_minutes)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(days=self.settings.session_ttl_days)

    @trace_function("auth.signup")
    async def signup(self, phone: str, name: Optional[str] = None) -> SignupResult:
        """
        Register a phone number and send the signup OTP.

        A retry for an unverified phone re-issues the OTP, including a retry that
        loses the race to create the user. If the SMS for a new account cannot be
        sent, the user and its token grant are removed so the phone stays free,
        unless a concurrent retry has already re-issued its OTP.

        Raises:
            AlreadyExistsError: The phone belongs to a verified user
            DispatchFailedError: The OTP SMS could not be sent
            StorageError: The backing store failed
        """
        now = self.clock()
        otp_code = generate_otp()
        otp_expires_at = now + self.otp_ttl

        existing = await self.users.get_by_phone(phone)

        if existing is None:
            user = await self.users.create_with_grant(
                phone=phone,
                name=name,
                otp_code=otp_code,
                otp_expires_at=otp_expires_at,
                grant=self.settings.signup_token_grant,
            )

            if user is not None:
                sms_result = await self._dispatch_otp(
                    phone, signup_message(otp_code, self.settings.otp_ttl_minutes), "signup"
                )
                if not sms_result.success:
                    await self._rollback_signup(user, otp_code)
                    raise DispatchFailedError("Failed to send OTP. Please try again.")

                logger.info(f"Signup OTP sent to user {user.id}")
                return SignupResult(user_id=user.id, phone=phone, otp_expires_at=otp_expires_at)

            logger.info(f"Phone {mask_phone(phone)} was registered concurrently, re-issuing its OTP")
            existing = await self.users.get_by_phone(phone)
            if existing is None:
                raise StorageError(f"User for {mask_phone(phone)} vanished during signup")

        if existing.verified:
            logger.info(f"Signup rejected for verified phone {mask_phone(phone)}")
            raise AlreadyExistsError("User already exists. Please login instead.")

        logger.info(f"Re-issuing signup OTP for unverified user {existing.id}")
        await self.users.set_otp(existing.id, otp_code, otp_expires_at, now, name=name)

        sms_result = await self._dispatch_otp(phone, signup_message(otp_code, self.settings.otp_ttl_minutes), "signup")
        if not sms_result.success:
            raise DispatchFailedError("Failed to send OTP. Please try again.")

        return SignupResult(user_id=existing.id, phone=phone, otp_expires_at=otp_expires_at, resent=True)

    @trace_function("auth.verify_signup_otp")
    async def verify_signup_otp(self, phone: str, otp_code: str) -> SessionGrant:
        """
        Complete signup: mark the user verified and open a session.

        Raises:
            NotFoundError: No user has this phone
            AlreadyVerifiedError: The user completed signup before
            InvalidCodeError: The code does not match or was already used
            ExpiredError: The code is past its expiry
        """
        now = self.clock()
        user = await self.users.get_by_phone(phone)

        if user is None:
            raise NotFoundError("User not found or invalid phone number")
        if user.verified:
            raise AlreadyVerifiedError("User already verified. Please login instead.")

        self._check_code(user, otp_code, now)

        if not await self.users.consume_otp(user.id, otp_code, now, mark_verified=True):
            logger.info(f"Signup OTP for user {user.id} was consumed concurrently")
            raise InvalidCodeError("Invalid OTP code. Please re-check the code and try again.")

        user.verified = True
        user.otp_code = None
        user.otp_expires_at = None
        user.last_login = now

        return await self._grant_session(user, now)

    @trace_function("auth.login")
    async def login(self, phone: str) -> LoginChallenge:
        """
        Start a login: debit the login price and send a login OTP.

        The debit happens first and is refunded, exactly once, if the OTP
        cannot be stored, the SMS is not delivered, or the call is cancelled
        before the SMS goes out.

        Raises:
            NotFoundError: No user has this phone
            UnverifiedError: Signup was never completed
            InsufficientTokensError: Balance is below the login price
            DispatchFailedError: The OTP SMS could not be sent (after refund)
            StorageError: The backing store failed
        """
        user = await self.users.get_by_phone(phone)

        if user is None:
            raise NotFoundError("No account found with this phone number. Please sign up first.")
        if not user.verified:
            raise UnverifiedError("Account not verified. Please complete signup verification first.")

        cost = self.ledger.price_of(LOGIN)
        tokens_remaining = await self.ledger.debit(user.id, cost)
        if tokens_remaining is None:
            balance = await self.ledger.get_balance(user.id)
            raise InsufficientTokensError(required=cost, balance=balance, action=LOGIN)

        now = self.clock()
        otp_code = generate_otp()
        otp_expires_at = now + self.otp_ttl

        # Anything that stops us before the SMS is out, cancellation included, refunds the debit.
        try:
            await self.users.set_otp(user.id, otp_code, otp_expires_at, now)
            sms_result = await self._dispatch_otp(
                phone, login_message(otp_code, self.settings.otp_ttl_minutes), "login"
            )
        except BaseException as e:
            logger.error(
                f"Login for user {user.id} interrupted before the OTP was sent "
                f"({type(e).__name__}), refunding {cost} tokens"
            )
            await self._compensate(user.id, cost)
            raise

        if not sms_result.success:
            logger.error(f"Login SMS failed for user {user.id} ({sms_result.reason}), refunding {cost} tokens")
            await self._compensate(user.id, cost)
            raise DispatchFailedError(
                "Failed to send login SMS. Your tokens were not charged. Please try again."
            )

        logger.info(f"Login OTP sent to user {user.id}, {tokens_remaining} tokens remaining")
        return LoginChallenge(
            user_id=user.id,
            phone=user.phone,
            name=user.name,
            otp_expires_at=otp_expires_at,
            tokens_remaining=tokens_remaining,
        )

    @trace_function("auth.verify_login_otp")
    async def verify_login_otp(self, phone: str, otp_code: str) -> SessionGrant:
        """
        Complete a login: consume the code and replace the user's session.

        Raises:
            NotFoundError: No user has this phone
            UnverifiedError: Signup was never completed
            InvalidCodeError: The code does not match or was already used
            ExpiredError: The code is past its expiry
        """
        now = self.clock()
        user = await self.users.get_by_phone(phone)

        if user is None:
            raise NotFoundError("User not found or invalid phone number")
        if not user.verified:
            raise UnverifiedError("Account not verified. Please complete signup first.")

        self._check_code(user, otp_code, now)

        if not await self.users.consume_otp(user.id, otp_code, now, mark_verified=False):
            logger.info(f"Login OTP for user {user.id} was consumed concurrently")
            raise InvalidCodeError("Invalid OTP code. Please re-check the code and try again.")

        user.otp_code = None
        user.otp_expires_at = None
        user.last_login = now

        return await self._grant_session(user, now)

    async def validate_session(self, token: Optional[str]) -> Optional[AuthenticatedSession]:
        """
        Resolve a bearer token to its session and user.

        Returns None for a missing, malformed, unknown or expired token.
        Expired rows are reaped in the background at most once per interval.
        """
        if not token or len(token) < self.settings.min_session_token_length:
            return None

        now = self.clock()
        self._schedule_reap(now)

        found = await self.sessions.get_valid(token, now)
        if found is None:
            logger.debug(f"No valid session for token {mask_token(token)}")
            return None

        if found.session.is_expired(now):
            return None

        return found

    async def refresh_session(self, token: Optional[str]) -> bool:
        """
        Extend a valid session to now + session TTL, keeping the same token.

        Returns:
            False if the session is not currently valid or the store failed
        """
        if not token or len(token) < self.settings.min_session_token_length:
            return False

        now = self.clock()
        try:
            refreshed = await self.sessions.extend(token, now, now + self.session_ttl)
        except StorageError as e:
            logger.warning(f"Session refresh failed for {mask_token(token)}: {e}")
            return False

        if refreshed:
            logger.debug(f"Session {mask_token(token)} refreshed")
        return refreshed

    async def logout(self, token: Optional[str]) -> None:
        """Delete the session if it exists. Never fails from the caller's view."""
        if not token:
            return

        try:
            deleted = await self.sessions.delete(token)
            logger.info(f"Logout for {mask_token(token)}: session {'deleted' if deleted else 'not found'}")
        except StorageError as e:
            logger.warning(f"Session deletion failed during logout for {mask_token(token)}: {e}")

    async def get_balance(self, user_id: UUID) -> int:
        return await self.ledger.get_balance(user_id)

    def _check_code(self, user: User, otp_code: str, now: datetime) -> None:
        if not user.has_pending_otp() or not secrets.compare_digest(user.otp_code, otp_code):
            logger.info(f"OTP mismatch for user {user.id}")
            raise InvalidCodeError("Invalid OTP code. Please re-check the code and try again.")

        if user.otp_expired(now):
            logger.info(f"Expired OTP presented for user {user.id}")
            raise ExpiredError("OTP has expired. Please request a new code.")

    async def _grant_session(self, user: User, now: datetime) -> SessionGrant:
        token = generate_session_token(self.settings.session_token_bytes)
        expires_at = now + self.session_ttl

        session = await self.sessions.replace_for_user(user.id, token, expires_at)
        tokens_remaining = await self.ledger.get_balance(user.id)

        logger.info(f"Session issued for user {user.id}, expires {expires_at.isoformat()}")
        return SessionGrant(
            user=user,
            token=session.token,
            expires_at=session.expires_at,
            tokens_remaining=tokens_remaining,
        )

    async def _dispatch_otp(self, phone: str, message: str, purpose: str) -> SMSResult:
        """Send an OTP SMS. Exceptions and timeouts are reported as failed results."""
        try:
            result = await asyncio.wait_for(
                self.sms.send(phone, message),
                timeout=self.settings.sms_timeout_seconds
            )
        except asyncio.TimeoutError:
            result = SMSResult(success=False, reason="SMS dispatch timed out")
        except Exception as e:
            logger.error(f"SMS gateway raised for {mask_phone(phone)}: {e}")
            result = SMSResult(success=False, reason=str(e))

        record_otp_dispatch(purpose, result.success)
        if not result.success:
            logger.error(f"{purpose.capitalize()} OTP dispatch to {mask_phone(phone)} failed: {result.reason}")
        return result

    async def _refund(self, user_id: UUID, amount: int) -> None:
        try:
            await self.ledger.refund(user_id, amount)
        except ServiceError as e:
            logger.error(
                f"Compensating refund of {amount} tokens for user {user_id} failed: {e}. "
                "Manual reconciliation required."
            )

    async def _compensate(self, user_id: UUID, amount: int) -> None:
        """Refund a debit in its own task so it completes even if the caller is cancelled."""
        task = asyncio.create_task(self._refund(user_id, amount))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        await asyncio.shield(task)

    async def _rollback_signup(self, user: User, otp_code: str) -> None:
        try:
            if await self.users.delete_pending(user.id, otp_code):
                logger.info(f"Rolled back signup for user {user.id}")
            else:
                logger.info(f"Signup for user {user.id} was re-issued concurrently, keeping the user")
        except ServiceError as e:
            logger.error(f"Failed to roll back signup for user {user.id}: {e}")

    def _schedule_reap(self, now: datetime) -> None:
        if self._last_reap is not None and now - self._last_reap < REAP_INTERVAL:
            return
        self._last_reap = now

        task = asyncio.create_task(self._reap_expired(now))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _reap_expired(self, now: datetime) -> None:
        try:
            removed = await self.sessions.delete_expired(now)
            if removed:
                logger.info(f"Reaped {removed} expired sessions")
        except Exception as e:
            logger.warning(f"Expired session cleanup failed: {e}")
