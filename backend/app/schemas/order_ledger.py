"""
Sub-ledger row schemas (receipts, payments, profit, service charge).
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from backend.app.models.enums import SubLedgerStatus


class DocumentRowCreate(BaseModel):
    """Receipt or payment draft."""
    amount: float = Field(..., gt=0)
    account_id: Optional[int] = Field(None, description="Defaults to the order's buy/sell account")
    image_path: Optional[str] = Field(None, description="Path returned by POST /uploads")


class DocumentRowUpdate(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    account_id: Optional[int] = None
    image_path: Optional[str] = None


class MarginRowUpdate(BaseModel):
    amount: Optional[float] = None
    account_id: Optional[int] = None
    currency_code: Optional[str] = Field(None, max_length=16)


class DocumentRowResponse(BaseModel):
    id: int
    order_id: int
    account_id: Optional[int] = None
    amount: float
    image_path: Optional[str] = None
    status: SubLedgerStatus
    created_at: datetime

    class Config:
        from_attributes = True


class MarginRowResponse(BaseModel):
    id: int
    order_id: int
    account_id: Optional[int] = None
    amount: float
    currency_code: Optional[str] = None
    status: SubLedgerStatus
    created_at: datetime

    class Config:
        from_attributes = True


class FlexExcessResponse(BaseModel):
    """Set when a confirmed flex payment exceeds what the receipts cover."""
    excess_amount: float
    additional_receipts_needed: float
    effective_rate: float

    class Config:
        from_attributes = True


class ConfirmResponse(BaseModel):
    success: bool
    row_id: int
    status: SubLedgerStatus
    flex_excess: Optional[FlexExcessResponse] = None


class RowDeleteResponse(BaseModel):
    success: bool
    row_id: int
