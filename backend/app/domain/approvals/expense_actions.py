"""
Expenses and internal transfers.

Both post to accounts as soon as they are recorded. After that they only
change through an approved request: delete reverses the postings, edit
reverses them and posts the amended values.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InvalidArgumentError, ResourceNotFoundError
from backend.app.core.permissions import Actor
from backend.app.domain.ledger.account_ledger import AccountLedger
from backend.app.models.account import Account
from backend.app.models.enums import TransactionType
from backend.app.models.expense import Expense, InternalTransfer
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

EXPENSE_AMENDABLE = {"account_id", "amount", "description"}
TRANSFER_AMENDABLE = {"from_account_id", "to_account_id", "amount", "description"}


def expense_description(description: Optional[str]) -> str:
    return f"Expense: {description}" if description else "Expense"


def transfer_descriptions(source: Account, target: Account, description: Optional[str]):
    """(withdraw side, add side) transaction descriptions."""
    outgoing = f"Internal transfer to {target.name}"
    incoming = f"Internal transfer from {source.name}"
    if description:
        return f"{outgoing}: {description}", f"{incoming}: {description}"
    return outgoing, incoming


def _positive(amount) -> float:
    if amount is None or float(amount) <= 0:
        raise InvalidArgumentError("Amount must be a positive number", details={"amount": amount})
    return float(amount)


class ExpenseLedger:

    # Expenses

    @staticmethod
    async def load_expense(db: AsyncSession, expense_id: int) -> Expense:
        expense = await db.get(Expense, expense_id)
        if expense is None or expense.deleted_at is not None:
            raise ResourceNotFoundError("Expense", expense_id)
        return expense

    @staticmethod
    async def create_expense(
        db: AsyncSession,
        actor: Actor,
        account_id: int,
        amount: float,
        description: Optional[str] = None,
        image_path: Optional[str] = None
    ) -> Expense:
        amount = _positive(amount)
        await AccountLedger.get_account(db, account_id)

        await AccountLedger.post_entry(db, account_id, TransactionType.WITHDRAW, amount, expense_description(description))
        expense = Expense(
            account_id=account_id,
            amount=amount,
            description=description,
            image_path=image_path,
            created_by=actor.user_id,
        )
        db.add(expense)
        await db.flush()

        await log_event(db, AuditAction.EXPENSE_CREATED, actor_id=actor.user_id, entity_type="expense", entity_id=expense.id)
        return expense

    @staticmethod
    async def list_expenses(db: AsyncSession, limit: int = 50, offset: int = 0) -> List[Expense]:
        result = await db.execute(
            select(Expense)
            .where(Expense.deleted_at.is_(None))
            .order_by(desc(Expense.created_at), desc(Expense.id))
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def apply_expense_amendment(db: AsyncSession, expense: Expense, data: Dict) -> Expense:
        account_id = data.get("account_id", expense.account_id)
        amount = _positive(data.get("amount", expense.amount))
        description = data.get("description", expense.description)
        await AccountLedger.get_account(db, account_id)

        if account_id != expense.account_id or amount != expense.amount:
            old = expense_description(expense.description)
            await AccountLedger.post_entry(db, expense.account_id, TransactionType.ADD, expense.amount, f"Reversal: {old}")
            await AccountLedger.post_entry(db, account_id, TransactionType.WITHDRAW, amount, expense_description(description))

        expense.account_id = account_id
        expense.amount = amount
        expense.description = description
        await db.flush()
        return expense

    @staticmethod
    async def delete_expense(db: AsyncSession, expense: Expense) -> None:
        """Reverse the posting and soft-delete."""
        old = expense_description(expense.description)
        await AccountLedger.post_entry(db, expense.account_id, TransactionType.ADD, expense.amount, f"Reversal: {old}")
        expense.deleted_at = datetime.now(timezone.utc)
        await db.flush()
        logger.info("Expense %s deleted", expense.id)

    # Internal transfers

    @staticmethod
    async def load_transfer(db: AsyncSession, transfer_id: int) -> InternalTransfer:
        transfer = await db.get(InternalTransfer, transfer_id)
        if transfer is None:
            raise ResourceNotFoundError("Transfer", transfer_id)
        return transfer

    @staticmethod
    async def _transfer_accounts(db: AsyncSession, from_account_id: int, to_account_id: int):
        if from_account_id == to_account_id:
            raise InvalidArgumentError("Cannot transfer to the same account")
        source = await AccountLedger.get_account(db, from_account_id)
        target = await AccountLedger.get_account(db, to_account_id)
        if source.currency_code != target.currency_code:
            raise InvalidArgumentError(
                "Transfers require accounts in the same currency",
                details={"from": source.currency_code, "to": target.currency_code},
            )
        return source, target

    @staticmethod
    async def _post_transfer(db: AsyncSession, source: Account, target: Account, amount: float, description: Optional[str]):
        outgoing, incoming = transfer_descriptions(source, target, description)
        await AccountLedger.post_entry(db, source.id, TransactionType.WITHDRAW, amount, outgoing)
        await AccountLedger.post_entry(db, target.id, TransactionType.ADD, amount, incoming)

    @staticmethod
    async def _reverse_transfer(db: AsyncSession, transfer: InternalTransfer):
        source = await AccountLedger.get_account(db, transfer.from_account_id)
        target = await AccountLedger.get_account(db, transfer.to_account_id)
        outgoing, incoming = transfer_descriptions(source, target, transfer.description)
        await AccountLedger.post_entry(db, source.id, TransactionType.ADD, transfer.amount, f"Reversal: {outgoing}")
        await AccountLedger.post_entry(db, target.id, TransactionType.WITHDRAW, transfer.amount, f"Reversal: {incoming}")

    @staticmethod
    async def create_transfer(
        db: AsyncSession,
        actor: Actor,
        from_account_id: int,
        to_account_id: int,
        amount: float,
        description: Optional[str] = None
    ) -> InternalTransfer:
        amount = _positive(amount)
        source, target = await ExpenseLedger._transfer_accounts(db, from_account_id, to_account_id)

        await ExpenseLedger._post_transfer(db, source, target, amount, description)
        transfer = InternalTransfer(
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            description=description,
            created_by=actor.user_id,
        )
        db.add(transfer)
        await db.flush()

        await log_event(db, AuditAction.TRANSFER_CREATED, actor_id=actor.user_id, entity_type="transfer", entity_id=transfer.id)
        return transfer

    @staticmethod
    async def list_transfers(db: AsyncSession, limit: int = 50, offset: int = 0) -> List[InternalTransfer]:
        result = await db.execute(
            select(InternalTransfer)
            .order_by(desc(InternalTransfer.created_at), desc(InternalTransfer.id))
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def apply_transfer_amendment(db: AsyncSession, transfer: InternalTransfer, data: Dict) -> InternalTransfer:
        from_account_id = data.get("from_account_id", transfer.from_account_id)
        to_account_id = data.get("to_account_id", transfer.to_account_id)
        amount = _positive(data.get("amount", transfer.amount))
        description = data.get("description", transfer.description)
        source, target = await ExpenseLedger._transfer_accounts(db, from_account_id, to_account_id)

        moved = (
            from_account_id != transfer.from_account_id
            or to_account_id != transfer.to_account_id
            or amount != transfer.amount
        )
        if moved:
            await ExpenseLedger._reverse_transfer(db, transfer)
            await ExpenseLedger._post_transfer(db, source, target, amount, description)

        transfer.from_account_id = from_account_id
        transfer.to_account_id = to_account_id
        transfer.amount = amount
        transfer.description = description
        await db.flush()
        return transfer

    @staticmethod
    async def delete_transfer(db: AsyncSession, transfer: InternalTransfer) -> None:
        await ExpenseLedger._reverse_transfer(db, transfer)
        transfer_id = transfer.id
        await db.delete(transfer)
        await db.flush()
        logger.info("Transfer %s deleted", transfer_id)
