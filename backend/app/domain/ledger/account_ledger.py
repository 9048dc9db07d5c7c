"""
Account Ledger (Domain Logic).

The only code path that changes an account balance. Every balance delta is
paired with one immutable AccountTransaction row in the same transaction.
"""

import logging
from typing import List, Optional
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InvalidArgumentError, ResourceNotFoundError
from backend.app.models.account import Account, AccountTransaction
from backend.app.models.enums import TransactionType

logger = logging.getLogger(__name__)


def opposite(direction: TransactionType) -> TransactionType:
    return TransactionType.WITHDRAW if direction == TransactionType.ADD else TransactionType.ADD


class AccountLedger:

    @staticmethod
    async def get_account(db: AsyncSession, account_id: int) -> Account:
        account = await db.get(Account, account_id)
        if account is None:
            raise ResourceNotFoundError("Account", account_id)
        return account

    @staticmethod
    async def post_entry(
        db: AsyncSession,
        account_id: int,
        direction: TransactionType,
        amount: float,
        description: str
    ) -> AccountTransaction:
        """
        Apply a balance delta and append its transaction row.

        Balances may go negative; that is never rejected.

        Args:
            db: Database session (caller owns the transaction)
            account_id: Account to move
            direction: ADD increases the balance, WITHDRAW decreases it
            amount: Strictly positive magnitude
            description: Human readable reason stored on the row

        Returns:
            The flushed AccountTransaction
        """
        if amount is None or amount <= 0:
            raise InvalidArgumentError(
                "Posting amount must be positive",
                details={"account_id": account_id, "amount": amount}
            )

        account = await AccountLedger.get_account(db, account_id)

        if direction == TransactionType.ADD:
            account.balance = (account.balance or 0.0) + amount
        else:
            account.balance = (account.balance or 0.0) - amount

        entry = AccountTransaction(
            account_id=account_id,
            type=direction,
            amount=amount,
            description=description,
        )
        db.add(entry)
        await db.flush()

        logger.debug(
            "Posted %s %.6f on account %s (%s), balance now %.6f",
            direction.value, amount, account_id, description, account.balance
        )
        return entry

    @staticmethod
    async def reverse_entry(
        db: AsyncSession,
        account_id: int,
        direction: TransactionType,
        amount: float,
        description: str
    ) -> AccountTransaction:
        """Post the exact inverse of an earlier (direction, amount) entry."""
        return await AccountLedger.post_entry(db, account_id, opposite(direction), amount, description)

    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        account_id: int,
        limit: int = 100,
        offset: int = 0
    ) -> List[AccountTransaction]:
        await AccountLedger.get_account(db, account_id)
        result = await db.execute(
            select(AccountTransaction)
            .where(AccountTransaction.account_id == account_id)
            .order_by(AccountTransaction.created_at.desc(), AccountTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def transaction_total(db: AsyncSession, account_id: int) -> float:
        """Sum of signed transaction amounts; always equals the stored balance."""
        signed = case(
            (AccountTransaction.type == TransactionType.ADD, AccountTransaction.amount),
            else_=-AccountTransaction.amount,
        )
        result = await db.execute(
            select(func.coalesce(func.sum(signed), 0.0)).where(AccountTransaction.account_id == account_id)
        )
        return float(result.scalar_one())

    @staticmethod
    async def validate_account(
        db: AsyncSession,
        account_id: Optional[int],
        currency_code: Optional[str],
        role: str
    ) -> Optional[Account]:
        """
        Check an account exists and is held in the expected currency.

        Raises:
            ResourceNotFoundError: account missing
            InvalidArgumentError: currency mismatch
        """
        if account_id is None:
            return None
        account = await AccountLedger.get_account(db, account_id)
        if currency_code and account.currency_code != currency_code:
            raise InvalidArgumentError(
                f"{role} account currency ({account.currency_code}) does not match {currency_code}",
                details={"account_id": account_id, "expected_currency": currency_code},
            )
        return account
