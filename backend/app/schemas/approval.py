"""
Approval request schemas.

The amendment models double as the validation contract for request_data:
an edit request is rejected up front if its payload would not apply.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional
from backend.app.models.enums import (
    ApprovalEntityType, ApprovalRequestType, ApprovalStatus, OrderType
)


class AmendedDocument(BaseModel):
    """A receipt or payment in an amendment array."""
    amount: float = Field(..., gt=0)
    account_id: Optional[int] = None
    current_image_path: Optional[str] = Field(None, description="Existing image kept as is")
    new_image_path: Optional[str] = Field(None, description="Image uploaded for this amendment")
    image_path: Optional[str] = None

    class Config:
        extra = "forbid"


class OrderAmendment(BaseModel):
    """Fields an approved edit may change on an order."""
    customer_id: Optional[int] = None
    from_currency: Optional[str] = Field(None, min_length=1, max_length=16)
    to_currency: Optional[str] = Field(None, min_length=1, max_length=16)
    amount_buy: Optional[float] = Field(None, gt=0)
    amount_sell: Optional[float] = Field(None, gt=0)
    rate: Optional[float] = Field(None, gt=0)
    order_type: Optional[OrderType] = None
    is_flex_order: Optional[bool] = None
    handler_id: Optional[int] = None
    buy_account_id: Optional[int] = None
    sell_account_id: Optional[int] = None
    remarks: Optional[str] = None

    receipts: Optional[List[AmendedDocument]] = None
    payments: Optional[List[AmendedDocument]] = None

    profit_amount: Optional[float] = None
    profit_account_id: Optional[int] = None
    profit_currency: Optional[str] = None
    service_charge_amount: Optional[float] = None
    service_charge_account_id: Optional[int] = None
    service_charge_currency: Optional[str] = None

    class Config:
        extra = "forbid"


class ExpenseAmendment(BaseModel):
    account_id: Optional[int] = None
    amount: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None

    class Config:
        extra = "forbid"


class TransferAmendment(BaseModel):
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    amount: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None

    class Config:
        extra = "forbid"


AMENDMENT_SCHEMAS = {
    ApprovalEntityType.ORDER: OrderAmendment,
    ApprovalEntityType.EXPENSE: ExpenseAmendment,
    ApprovalEntityType.TRANSFER: TransferAmendment,
}


class ApprovalRequestCreate(BaseModel):
    """Schema for requesting an edit or delete."""
    entity_type: ApprovalEntityType
    entity_id: int = Field(..., gt=0)
    request_type: ApprovalRequestType
    reason: str = Field(..., min_length=1, max_length=2000, description="Why the change is needed")
    request_data: Optional[Dict[str, Any]] = Field(None, description="Amended fields (edit only)")


class ApprovalReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000, description="Rejection reason shown to the requester")


class ApprovalRequestResponse(BaseModel):
    """Schema for approval request response."""
    id: int
    entity_type: ApprovalEntityType
    entity_id: int
    request_type: ApprovalRequestType
    requested_by: int
    reason: str
    request_data: Optional[Dict[str, Any]] = None
    original_entity_data: Dict[str, Any]
    status: ApprovalStatus
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[int] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    requested_at: datetime

    class Config:
        from_attributes = True


class ApprovalRequestDetail(ApprovalRequestResponse):
    """Request plus the entity as it is now (None once deleted)."""
    current_entity_data: Optional[Dict[str, Any]] = None


class ApprovalRequestListResponse(BaseModel):
    requests: List[ApprovalRequestResponse]
    total: int


class ApprovalDecisionResponse(BaseModel):
    success: bool
    message: str
    request: ApprovalRequestResponse
