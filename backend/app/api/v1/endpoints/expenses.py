"""
Expense and Internal Transfer API Endpoints.

Both post immediately. Later edits and deletes go through
/approval-requests with entity_type expense or transfer.
"""

from fastapi import APIRouter, Depends, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_current_actor, get_file_storage
from backend.app.core.permissions import Actor
from backend.app.domain.approvals.expense_actions import ExpenseLedger
from backend.app.schemas.expense import (
    ExpenseCreate,
    ExpenseListResponse,
    ExpenseResponse,
    TransferCreate,
    TransferListResponse,
    TransferResponse,
)
from backend.app.services.file_storage import FileStorage

router = APIRouter(prefix="/expenses", tags=["Expenses"])
transfers_router = APIRouter(prefix="/transfers", tags=["Internal Transfers"])


@router.post("", response_model=ExpenseResponse, status_code=status.HTTP_201_CREATED)
async def create_expense(
    payload: ExpenseCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage)
):
    """Record an expense and withdraw it from the account."""
    expense = await ExpenseLedger.create_expense(
        db,
        actor,
        payload.account_id,
        payload.amount,
        payload.description,
        storage.normalize(payload.image_path),
    )
    await db.commit()
    await db.refresh(expense)
    return expense


@router.get("", response_model=ExpenseListResponse)
async def list_expenses(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    expenses = await ExpenseLedger.list_expenses(db, limit, offset)
    return {"expenses": expenses, "count": len(expenses)}


@router.get("/{expense_id}", response_model=ExpenseResponse)
async def get_expense(
    expense_id: int = Path(..., description="Expense ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    return await ExpenseLedger.load_expense(db, expense_id)


@transfers_router.post("", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def create_transfer(
    payload: TransferCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Move money between two accounts of the same currency."""
    transfer = await ExpenseLedger.create_transfer(
        db,
        actor,
        payload.from_account_id,
        payload.to_account_id,
        payload.amount,
        payload.description,
    )
    await db.commit()
    await db.refresh(transfer)
    return transfer


@transfers_router.get("", response_model=TransferListResponse)
async def list_transfers(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    transfers = await ExpenseLedger.list_transfers(db, limit, offset)
    return {"transfers": transfers, "count": len(transfers)}


@transfers_router.get("/{transfer_id}", response_model=TransferResponse)
async def get_transfer(
    transfer_id: int = Path(..., description="Transfer ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    return await ExpenseLedger.load_transfer(db, transfer_id)
