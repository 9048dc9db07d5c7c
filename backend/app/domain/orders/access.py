"""
Order lookup and mutation guards shared by the order domain services.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    ConflictError,
    InsufficientPermissionsError,
    InvalidStateError,
    ResourceNotFoundError,
)
from backend.app.core.permissions import Actor
from backend.app.models.approval_request import ApprovalRequest
from backend.app.models.enums import ApprovalEntityType, ApprovalStatus, OrderStatus
from backend.app.models.order import Order

# Statuses that mean an approval request is in flight
APPROVAL_GATED_STATUSES = (OrderStatus.PENDING_AMEND, OrderStatus.PENDING_DELETE)


async def load_order(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise ResourceNotFoundError("Order", order_id)
    return order


async def find_pending_request(
    db: AsyncSession,
    entity_type: ApprovalEntityType,
    entity_id: int
):
    result = await db.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.entity_type == entity_type,
            ApprovalRequest.entity_id == entity_id,
            ApprovalRequest.status == ApprovalStatus.PENDING,
        )
    )
    return result.scalars().first()


async def ensure_no_pending_request(
    db: AsyncSession,
    entity_type: ApprovalEntityType,
    entity_id: int
) -> None:
    pending = await find_pending_request(db, entity_type, entity_id)
    if pending is not None:
        raise ConflictError(
            f"{entity_type.value.capitalize()} {entity_id} has a pending approval request",
            details={"approval_request_id": pending.id},
        )


async def ensure_order_mutable(
    db: AsyncSession,
    actor: Actor,
    order: Order,
    allow_cancelled: bool = False
) -> None:
    """
    Gate for every direct (non-approval) change to an order or its rows.

    1. Actor is creator, handler or admin
    2. No approval request is in flight
    3. Order is not cancelled (unless allowed); completed orders only for admins
    """
    if not actor.can_modify_order(order):
        raise InsufficientPermissionsError(
            "Only the creator, the handler or an admin can modify this order",
            details={"order_id": order.id},
        )

    if order.status in APPROVAL_GATED_STATUSES:
        raise ConflictError(
            f"Order {order.id} is awaiting approval ({order.status.value})",
            details={"order_id": order.id, "status": order.status.value},
        )
    await ensure_no_pending_request(db, ApprovalEntityType.ORDER, order.id)

    if order.status == OrderStatus.CANCELLED and not allow_cancelled:
        raise InvalidStateError(f"Order {order.id} is cancelled", details={"order_id": order.id})

    if order.status == OrderStatus.COMPLETED and not actor.is_admin:
        raise InvalidStateError(
            "Completed orders can only be changed through an approval request",
            details={"order_id": order.id, "status": order.status.value},
        )
