"""
Order API Endpoints.

Every mutating route runs its ledger work in the request session and
commits once; notifications and file cleanup happen only after commit.
"""

from fastapi import APIRouter, Depends, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_current_actor, get_file_storage
from backend.app.core.guards import require_admin
from backend.app.core.permissions import Actor
from backend.app.domain.orders.access import load_order
from backend.app.domain.orders.flex_reconciler import FlexOrderReconciler
from backend.app.domain.orders.lifecycle import OrderLifecycle
from backend.app.domain.orders.queries import get_order_details
from backend.app.domain.orders.sub_ledger import OrderSubLedger, SubLedgerKind
from backend.app.models.enums import OrderStatus
from backend.app.schemas.order import (
    AuditEntryResponse,
    FlexRateAdjust,
    OrderCreate,
    OrderDeleteResponse,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    OrderUpdate,
)
from backend.app.schemas.order_ledger import DocumentRowCreate, DocumentRowResponse
from backend.app.services.audit import get_audit_trail
from backend.app.services.file_storage import FileStorage

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """
    Create an order.

    Admins may create an order directly as completed; the completion
    postings are made in the same transaction.
    """
    order = await OrderLifecycle.create_order(db, actor, payload.model_dump(exclude_none=True))
    await db.commit()
    await db.refresh(order)
    return order


@router.get("", response_model=OrderListResponse)
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    customer_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    orders = await OrderLifecycle.list_orders(db, status_filter, customer_id, limit, offset)
    return {"orders": orders, "count": len(orders)}


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Order with receipts, payments, profit, service charge and balances."""
    return await get_order_details(db, order_id)


@router.put("/{order_id}", response_model=OrderResponse)
async def update_order(
    payload: OrderUpdate,
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    order = await OrderLifecycle.update_order(db, actor, order_id, payload.model_dump(exclude_unset=True))
    await db.commit()
    await db.refresh(order)
    return order


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def change_order_status(
    payload: OrderStatusUpdate,
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Move an order along its lifecycle; completing it posts to accounts."""
    order = await OrderLifecycle.change_status(db, actor, order_id, payload.status)
    await db.commit()
    await db.refresh(order)
    return order


@router.delete("/{order_id}", response_model=OrderDeleteResponse)
async def delete_order(
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage)
):
    """
    Delete an order directly (admin only).

    Every confirmed posting is reversed before the order is removed.
    Non-admins go through an approval request instead.
    """
    files = await OrderLifecycle.delete_order(db, actor, order_id)
    await db.commit()
    storage.delete_many(files)
    return {"success": True, "order_id": order_id, "message": "Order deleted"}


@router.post("/{order_id}/receipts", response_model=DocumentRowResponse, status_code=status.HTTP_201_CREATED)
async def add_receipt(
    payload: DocumentRowCreate,
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage)
):
    """Record a draft receipt; it moves no money until confirmed."""
    order = await load_order(db, order_id)
    row = await OrderSubLedger.create_draft(
        db, actor, SubLedgerKind.RECEIPT, order_id,
        amount=payload.amount,
        account_id=payload.account_id or order.buy_account_id,
        image_path=storage.normalize(payload.image_path),
    )
    await db.commit()
    await db.refresh(row)
    return row


@router.post("/{order_id}/payments", response_model=DocumentRowResponse, status_code=status.HTTP_201_CREATED)
async def add_payment(
    payload: DocumentRowCreate,
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage)
):
    """Record a draft payment; it moves no money until confirmed."""
    order = await load_order(db, order_id)
    row = await OrderSubLedger.create_draft(
        db, actor, SubLedgerKind.PAYMENT, order_id,
        amount=payload.amount,
        account_id=payload.account_id or order.sell_account_id,
        image_path=storage.normalize(payload.image_path),
    )
    await db.commit()
    await db.refresh(row)
    return row


@router.post("/{order_id}/proceed-with-partial-receipts", response_model=OrderResponse)
async def proceed_with_partial_receipts(
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Accept a flex order's confirmed receipts as its full fill."""
    order = await FlexOrderReconciler.proceed_with_partial_receipts(db, actor, order_id)
    await db.commit()
    await db.refresh(order)
    return order


@router.post("/{order_id}/adjust-flex-rate", response_model=OrderResponse)
async def adjust_flex_rate(
    payload: FlexRateAdjust,
    order_id: int = Path(..., description="Order ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    order = await FlexOrderReconciler.adjust_rate(db, actor, order_id, payload.rate)
    await db.commit()
    await db.refresh(order)
    return order


@router.get("/{order_id}/audit", response_model=List[AuditEntryResponse])
async def get_order_audit_trail(
    order_id: int = Path(..., description="Order ID"),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Audit events recorded against the order, newest first."""
    return await get_audit_trail(db, entity_type="order", entity_id=order_id, limit=limit)
