"""
Account API Endpoints (read only).

Balances change only through ledger postings made by orders, expenses and
transfers.
"""

from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Optional

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_current_actor
from backend.app.core.permissions import Actor
from backend.app.domain.ledger.account_ledger import AccountLedger
from backend.app.models.account import Account
from backend.app.schemas.account import AccountResponse, AccountTransactionListResponse

router = APIRouter(prefix="/accounts", tags=["Accounts"])


@router.get("", response_model=List[AccountResponse])
async def list_accounts(
    currency_code: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    query = select(Account).order_by(Account.id)
    if currency_code:
        query = query.where(Account.currency_code == currency_code)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: int = Path(..., description="Account ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    return await AccountLedger.get_account(db, account_id)


@router.get("/{account_id}/transactions", response_model=AccountTransactionListResponse)
async def list_account_transactions(
    account_id: int = Path(..., description="Account ID"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """
    Transaction history, newest first.

    transaction_total is the signed sum of every posting and always equals
    the stored balance.
    """
    account = await AccountLedger.get_account(db, account_id)
    transactions = await AccountLedger.list_transactions(db, account_id, limit, offset)
    return {
        "account_id": account.id,
        "balance": account.balance,
        "transaction_total": await AccountLedger.transaction_total(db, account_id),
        "transactions": transactions,
    }
