"""
M-PESA payment callback handling.

Turns a completed STK push notification into a token credit. The payment row
is keyed by the M-PESA receipt and inserted in the same transaction as the
credit, so a replayed callback is recorded once and credited once.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from src.errors import NotFoundError
from src.models.api_models import STKCallback
from src.models.internal_models import Payment
from src.observability import record_payment_metrics, trace_function
from src.services.context import ServiceContext
from src.utils.phone import InvalidPhoneError, mask_phone, normalize_phone

logger = logging.getLogger(__name__)


@dataclass
class CallbackOutcome:
    """What a callback did; the provider is acknowledged either way."""

    status: str  # credited, duplicate, payment_failed, unknown_user, invalid
    tokens_added: int = 0
    user_id: Optional[UUID] = None
    receipt: Optional[str] = None


class PaymentService:
    """Applies payment gateway callbacks to the token ledger."""

    def __init__(self, context: ServiceContext):
        self.users = context.users
        self.payments = context.payments
        self.settings = context.settings

    def tokens_for_amount(self, amount: float) -> int:
        return int(math.floor(amount * self.settings.tokens_per_kes))

    @trace_function("payments.stk_callback")
    async def handle_stk_callback(self, callback: STKCallback) -> CallbackOutcome:
        """
        Apply one STK push result.

        Args:
            callback: The parsed stkCallback object

        Returns:
            CallbackOutcome describing whether tokens were credited
        """
        if callback.ResultCode != 0:
            logger.info(
                f"Payment {callback.CheckoutRequestID} failed at provider: "
                f"{callback.ResultCode} {callback.ResultDesc}"
            )
            record_payment_metrics("payment_failed")
            return CallbackOutcome(status="payment_failed")

        receipt = callback.metadata_value("MpesaReceiptNumber")
        raw_amount = callback.metadata_value("Amount")
        raw_phone = callback.metadata_value("PhoneNumber")
        transaction_date = callback.metadata_value("TransactionDate")

        try:
            amount = float(raw_amount)
            phone = normalize_phone(str(raw_phone))
        except (TypeError, ValueError, InvalidPhoneError) as e:
            logger.error(f"Unusable payment metadata for {callback.CheckoutRequestID}: {e}")
            record_payment_metrics("invalid")
            return CallbackOutcome(status="invalid")

        if not receipt or amount <= 0:
            logger.error(f"Payment {callback.CheckoutRequestID} has no receipt or a non-positive amount")
            record_payment_metrics("invalid")
            return CallbackOutcome(status="invalid")

        return await self.credit_payment(
            phone=phone,
            amount=amount,
            receipt=str(receipt),
            checkout_request_id=callback.CheckoutRequestID,
            transaction_date=str(transaction_date) if transaction_date is not None else None,
        )

    async def credit_payment(
        self,
        phone: str,
        amount: float,
        receipt: str,
        checkout_request_id: Optional[str] = None,
        transaction_date: Optional[str] = None
    ) -> CallbackOutcome:
        """Credit floor(amount * rate) tokens once per receipt."""
        user = await self.users.get_by_phone(phone)
        if user is None:
            logger.warning(f"Payment {receipt} from unknown phone {mask_phone(phone)}; not credited")
            record_payment_metrics("unknown_user")
            return CallbackOutcome(status="unknown_user", receipt=receipt)

        tokens = self.tokens_for_amount(amount)
        payment = Payment(
            receipt=receipt,
            user_id=user.id,
            amount=amount,
            tokens_added=tokens,
            checkout_request_id=checkout_request_id,
            transaction_date=transaction_date,
        )

        credited = await self.payments.record_and_credit(payment)
        if not credited:
            logger.info(f"Payment {receipt} already recorded; ignoring replay")
            record_payment_metrics("duplicate")
            return CallbackOutcome(status="duplicate", user_id=user.id, receipt=receipt)

        logger.info(f"Payment {receipt}: added {tokens} tokens to user {user.id}")
        record_payment_metrics("credited")
        return CallbackOutcome(status="credited", tokens_added=tokens, user_id=user.id, receipt=receipt)

    async def get_payment(self, user_id: UUID, reference: str) -> Payment:
        """
        Find a payment of this user by receipt or checkout request id.

        Raises:
            NotFoundError: No such payment has been recorded
        """
        payment = await self.payments.find_for_user(user_id, reference)
        if payment is None:
            raise NotFoundError("Payment not found. It may still be processing.")
        return payment
