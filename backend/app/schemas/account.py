"""
Account read schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import List, Optional
from backend.app.models.enums import TransactionType


class AccountResponse(BaseModel):
    id: int
    name: str
    currency_code: str
    balance: float
    created_at: datetime

    class Config:
        from_attributes = True


class AccountTransactionResponse(BaseModel):
    id: int
    account_id: int
    type: TransactionType
    amount: float
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AccountTransactionListResponse(BaseModel):
    account_id: int
    balance: float
    transaction_total: float
    transactions: List[AccountTransactionResponse]
