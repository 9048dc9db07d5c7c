"""
Order API schemas.

Profit and service charge ride along on create/update as flat
profit_* / service_charge_* fields; each maps to a single sub-ledger row.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional
from backend.app.models.enums import OrderStatus, OrderType
from backend.app.schemas.order_ledger import MarginRowResponse, DocumentRowResponse


class MarginFields(BaseModel):
    profit_amount: Optional[float] = Field(None, ge=0, description="Profit booked on completion")
    profit_account_id: Optional[int] = None
    profit_currency: Optional[str] = Field(None, max_length=16)
    service_charge_amount: Optional[float] = Field(None, description="Negative when we pay the charge")
    service_charge_account_id: Optional[int] = None
    service_charge_currency: Optional[str] = Field(None, max_length=16)


class OrderCreate(MarginFields):
    """Schema for creating an order."""
    customer_id: int = Field(..., gt=0)
    from_currency: str = Field(..., min_length=1, max_length=16, description="Currency the customer gives")
    to_currency: str = Field(..., min_length=1, max_length=16, description="Currency the customer receives")
    amount_buy: float = Field(..., gt=0)
    amount_sell: float = Field(..., gt=0)
    rate: float = Field(..., gt=0)
    order_type: OrderType = OrderType.ONLINE
    is_flex_order: bool = False
    status: Optional[OrderStatus] = Field(None, description="Non-pending initial status is admin only")
    buy_account_id: Optional[int] = None
    sell_account_id: Optional[int] = None
    handler_id: Optional[int] = None
    remarks: Optional[str] = None


class OrderUpdate(MarginFields):
    """Partial update; which fields are accepted depends on the order status."""
    customer_id: Optional[int] = Field(None, gt=0)
    from_currency: Optional[str] = Field(None, min_length=1, max_length=16)
    to_currency: Optional[str] = Field(None, min_length=1, max_length=16)
    amount_buy: Optional[float] = Field(None, gt=0)
    amount_sell: Optional[float] = Field(None, gt=0)
    rate: Optional[float] = Field(None, gt=0)
    order_type: Optional[OrderType] = None
    is_flex_order: Optional[bool] = None
    buy_account_id: Optional[int] = None
    sell_account_id: Optional[int] = None
    handler_id: Optional[int] = None
    remarks: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class FlexRateAdjust(BaseModel):
    rate: float = Field(..., gt=0, description="New effective rate")


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: int
    customer_id: int
    from_currency: str
    to_currency: str
    amount_buy: float
    amount_sell: float
    rate: float
    is_flex_order: bool
    actual_amount_buy: Optional[float] = None
    actual_amount_sell: Optional[float] = None
    actual_rate: Optional[float] = None
    status: OrderStatus
    order_type: OrderType
    buy_account_id: Optional[int] = None
    sell_account_id: Optional[int] = None
    direct_postings_applied: bool
    handler_id: Optional[int] = None
    created_by: Optional[int] = None
    remarks: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    count: int


class OrderDetailResponse(BaseModel):
    """Order with every sub-ledger row and confirmed totals."""
    order: OrderResponse
    receipts: List[DocumentRowResponse]
    payments: List[DocumentRowResponse]
    profits: List[MarginRowResponse]
    service_charges: List[MarginRowResponse]
    total_receipt_amount: float
    total_payment_amount: float
    receipt_balance: float
    payment_balance: float

    class Config:
        from_attributes = True


class OrderDeleteResponse(BaseModel):
    success: bool
    order_id: int
    message: str


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: Optional[int] = None
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    meta_data: Optional[dict] = None
    timestamp: datetime

    class Config:
        from_attributes = True
