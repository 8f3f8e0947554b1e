"""
Prepaid token ledger.

The ledger is agnostic to why tokens move; prices for billable actions come
from settings. Debits are conditional single-statement updates in the store,
so a balance can never go negative and concurrent debits cannot both pass
on the same tokens.
"""

import logging
from typing import Dict
from uuid import UUID

from src.errors import InsufficientTokensError
from src.observability import record_ledger_metrics
from src.services.context import ServiceContext

logger = logging.getLogger(__name__)

LOGIN = "login"
EXPORT = "export"


class TokenLedger:
    """Credit, debit, refund and balance queries for one store."""

    def __init__(self, context: ServiceContext):
        self.store = context.tokens
        self.settings = context.settings

    @property
    def prices(self) -> Dict[str, int]:
        return {
            LOGIN: self.settings.login_token_cost,
            EXPORT: self.settings.export_token_cost,
        }

    def price_of(self, action: str) -> int:
        try:
            return self.prices[action]
        except KeyError:
            raise ValueError(f"Unknown billable action: {action}")

    async def get_balance(self, user_id: UUID) -> int:
        """Return the balance; a user without a balance row has 0 tokens."""
        balance = await self.store.get_balance(user_id)
        if balance is None:
            logger.warning(f"No token balance row for user {user_id}")
            return 0
        return balance.balance

    async def credit(self, user_id: UUID, amount: int) -> int:
        """
        Add tokens.

        Returns:
            The new balance
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        new_balance = await self.store.credit(user_id, amount)
        record_ledger_metrics("credit", amount)
        logger.info(f"Credited {amount} tokens to user {user_id}, balance now {new_balance}")
        return new_balance

    async def debit(self, user_id: UUID, amount: int):
        """
        Remove tokens if and only if the balance covers the amount.

        Returns:
            The new balance, or None when the balance was insufficient
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")

        new_balance = await self.store.debit(user_id, amount)
        if new_balance is None:
            record_ledger_metrics("debit", amount, success=False)
            logger.info(f"Debit of {amount} tokens rejected for user {user_id}: insufficient balance")
            return None

        record_ledger_metrics("debit", amount)
        logger.info(f"Debited {amount} tokens from user {user_id}, balance now {new_balance}")
        return new_balance

    async def refund(self, user_id: UUID, amount: int) -> int:
        """
        Reverse a debit whose paired side effect failed.

        Callers refund the exact amount they debited, once, and only when the
        downstream failure is confirmed.
        """
        if amount <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount}")

        new_balance = await self.store.credit(user_id, amount)
        record_ledger_metrics("refund", amount)
        logger.info(f"Refunded {amount} tokens to user {user_id}, balance now {new_balance}")
        return new_balance

    async def charge(self, user_id: UUID, action: str) -> int:
        """
        Debit the price of a billable action.

        Returns:
            The remaining balance

        Raises:
            InsufficientTokensError: If the balance is below the price
        """
        price = self.price_of(action)
        new_balance = await self.debit(user_id, price)
        if new_balance is None:
            balance = await self.get_balance(user_id)
            raise InsufficientTokensError(required=price, balance=balance, action=action)
        return new_balance
