"""
Expense and internal transfer schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional


class ExpenseCreate(BaseModel):
    account_id: int
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=1000)
    image_path: Optional[str] = Field(None, description="Path returned by POST /uploads")


class ExpenseResponse(BaseModel):
    id: int
    account_id: int
    amount: float
    description: Optional[str] = None
    image_path: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ExpenseListResponse(BaseModel):
    expenses: List[ExpenseResponse]
    count: int


class TransferCreate(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=1000)


class TransferResponse(BaseModel):
    id: int
    from_account_id: int
    to_account_id: int
    amount: float
    description: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TransferListResponse(BaseModel):
    transfers: List[TransferResponse]
    count: int
