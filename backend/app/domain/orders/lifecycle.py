"""
Order Lifecycle (Domain Logic).

Owns Order.status and the per-status field policy:

    pending        core trade fields and always-updatable fields
    under_process  always-updatable fields only
    cancelled      always-updatable fields only
    completed      admins: handler, remarks, profit, service charge
                   everyone else: approval request
    pending_amend / pending_delete: nothing until the request is decided

Transitions:

    pending -> under_process | cancelled | completed (admin)
    under_process -> completed | cancelled

completed <-> pending_amend / pending_delete is driven by the approval
workflow only.
"""

import logging
from typing import Dict, List, Optional
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    ConflictError,
    InsufficientPermissionsError,
    InvalidArgumentError,
    InvalidStateError,
)
from backend.app.core.permissions import Actor
from backend.app.domain.ledger.account_ledger import AccountLedger
from backend.app.domain.orders.access import (
    APPROVAL_GATED_STATUSES,
    ensure_no_pending_request,
    ensure_order_mutable,
    load_order,
)
from backend.app.domain.orders.sub_ledger import (
    MARGIN_KINDS,
    OrderSubLedger,
    SubLedgerKind,
    reverse_direct_postings,
    unreferenced_images,
)
from backend.app.models.enums import (
    ApprovalEntityType,
    OrderStatus,
    OrderType,
    SubLedgerStatus,
    TransactionType,
)
from backend.app.models.order import Order
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

CORE_FIELDS = {
    "customer_id", "from_currency", "to_currency",
    "amount_buy", "amount_sell", "rate",
    "order_type", "is_flex_order",
}
ALWAYS_UPDATABLE_FIELDS = {"handler_id", "buy_account_id", "sell_account_id", "remarks"}

MARGIN_PREFIX = {
    SubLedgerKind.PROFIT: "profit",
    SubLedgerKind.SERVICE_CHARGE: "service_charge",
}
MARGIN_FIELDS = {
    f"{prefix}_{suffix}"
    for prefix in MARGIN_PREFIX.values()
    for suffix in ("amount", "account_id", "currency")
}

# What an admin may still change directly on a completed order
COMPLETED_ADMIN_FIELDS = {"handler_id", "remarks"} | MARGIN_FIELDS

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.UNDER_PROCESS, OrderStatus.CANCELLED, OrderStatus.COMPLETED},
    OrderStatus.UNDER_PROCESS: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
}
ADMIN_ONLY_TRANSITIONS = {(OrderStatus.PENDING, OrderStatus.COMPLETED)}

FINALIZED_STATUSES = (OrderStatus.COMPLETED,) + APPROVAL_GATED_STATUSES


def margin_inputs(data: Dict, kind: SubLedgerKind) -> Dict:
    prefix = MARGIN_PREFIX[kind]
    return {
        suffix: data[f"{prefix}_{suffix}"]
        for suffix in ("amount", "account_id", "currency")
        if f"{prefix}_{suffix}" in data
    }


def validate_trade(from_currency: str, to_currency: str, amount_buy, amount_sell, rate) -> None:
    if from_currency == to_currency:
        raise InvalidArgumentError("From and to currencies must differ")
    for name, value in (("amount_buy", amount_buy), ("amount_sell", amount_sell), ("rate", rate)):
        if value is None or value <= 0:
            raise InvalidArgumentError(f"{name} must be positive", details={name: value})


class OrderLifecycle:

    @staticmethod
    async def validate_order_accounts(
        db: AsyncSession,
        from_currency: str,
        to_currency: str,
        buy_account_id: Optional[int],
        sell_account_id: Optional[int]
    ) -> None:
        """Buy account holds the from-leg, sell account the to-leg."""
        await AccountLedger.validate_account(db, buy_account_id, from_currency, "Buy")
        await AccountLedger.validate_account(db, sell_account_id, to_currency, "Sell")

    @staticmethod
    async def apply_margin_changes(
        db: AsyncSession,
        order: Order,
        data: Dict,
        cause: str = "Order amended"
    ) -> None:
        """
        Replace the profit/service charge row for every kind mentioned in data.

        Non-finalized orders (and orders with no confirmed margin rows) get a
        single draft; finalized orders or ones already carrying confirmed rows
        get a reversed-and-reposted confirmed row.
        """
        for kind in MARGIN_KINDS:
            inputs = margin_inputs(data, kind)
            if not inputs:
                continue

            confirmed = await OrderSubLedger.list_rows(db, kind, order.id, SubLedgerStatus.CONFIRMED)
            if order.status in FINALIZED_STATUSES or confirmed:
                status = SubLedgerStatus.CONFIRMED
                current = confirmed[0] if confirmed else None
            else:
                status = SubLedgerStatus.DRAFT
                drafts = await OrderSubLedger.list_rows(db, kind, order.id, SubLedgerStatus.DRAFT)
                current = drafts[0] if drafts else None

            await OrderSubLedger.replace_margin(
                db,
                kind,
                order,
                status,
                amount=inputs.get("amount", current.amount if current else None),
                account_id=inputs.get("account_id", current.account_id if current else None),
                currency_code=inputs.get("currency", current.currency_code if current else None),
                cause=cause,
            )

    @staticmethod
    async def create_order(db: AsyncSession, actor: Actor, data: Dict) -> Order:
        """
        Create an order.

        Flow:
        1. Validate trade, accounts and requested status
        2. Insert the order (created_by = actor)
        3. Draft profit/service charge rows from the margin inputs
        4. Created as completed: run the completion cascade

        Returns:
            Flushed Order
        """
        status = OrderStatus(data.get("status") or OrderStatus.PENDING)
        if status in APPROVAL_GATED_STATUSES:
            raise InvalidArgumentError(f"Orders cannot be created as {status.value}")
        if status != OrderStatus.PENDING and not actor.is_admin:
            raise InsufficientPermissionsError(
                "Only admins can create orders in a non-pending status",
                details={"status": status.value},
            )

        validate_trade(data["from_currency"], data["to_currency"], data["amount_buy"], data["amount_sell"], data["rate"])
        await OrderLifecycle.validate_order_accounts(
            db, data["from_currency"], data["to_currency"],
            data.get("buy_account_id"), data.get("sell_account_id"),
        )

        order = Order(
            customer_id=data["customer_id"],
            from_currency=data["from_currency"],
            to_currency=data["to_currency"],
            amount_buy=data["amount_buy"],
            amount_sell=data["amount_sell"],
            rate=data["rate"],
            order_type=OrderType(data.get("order_type") or OrderType.ONLINE),
            is_flex_order=bool(data.get("is_flex_order")),
            buy_account_id=data.get("buy_account_id"),
            sell_account_id=data.get("sell_account_id"),
            handler_id=data.get("handler_id"),
            remarks=data.get("remarks"),
            created_by=actor.user_id,
            status=OrderStatus.PENDING,
        )
        db.add(order)
        await db.flush()

        await OrderLifecycle.apply_margin_changes(db, order, data)

        if status == OrderStatus.COMPLETED:
            await OrderLifecycle._complete(db, order)
        order.status = status
        await db.flush()

        await log_event(
            db,
            AuditAction.ORDER_CREATED,
            actor_id=actor.user_id,
            entity_type="order",
            entity_id=order.id,
            metadata={"status": status.value, "is_flex_order": order.is_flex_order},
        )
        return order

    @staticmethod
    async def update_order(db: AsyncSession, actor: Actor, order_id: int, data: Dict) -> Order:
        """Direct field edit under the per-status policy."""
        order = await load_order(db, order_id)
        await ensure_order_mutable(db, actor, order, allow_cancelled=True)

        keys = set(data)
        unknown = keys - CORE_FIELDS - ALWAYS_UPDATABLE_FIELDS - MARGIN_FIELDS
        if unknown:
            raise InvalidArgumentError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if keys & CORE_FIELDS and order.status != OrderStatus.PENDING:
            raise InvalidStateError(
                "Core trade fields can only be edited while the order is pending",
                details={"order_id": order.id, "fields": sorted(keys & CORE_FIELDS)},
            )
        if order.status == OrderStatus.COMPLETED and keys - COMPLETED_ADMIN_FIELDS:
            raise InvalidStateError(
                "Only handler, remarks, profit and service charge can be edited on a completed order",
                details={"order_id": order.id, "fields": sorted(keys - COMPLETED_ADMIN_FIELDS)},
            )
        if order.status == OrderStatus.CANCELLED and keys & MARGIN_FIELDS:
            raise InvalidStateError("Cancelled orders carry no profit or service charge", details={"order_id": order.id})

        merged = {field: data.get(field, getattr(order, field)) for field in CORE_FIELDS | ALWAYS_UPDATABLE_FIELDS}
        validate_trade(merged["from_currency"], merged["to_currency"], merged["amount_buy"], merged["amount_sell"], merged["rate"])
        await OrderLifecycle.validate_order_accounts(
            db, merged["from_currency"], merged["to_currency"],
            merged["buy_account_id"], merged["sell_account_id"],
        )

        for field in keys & (CORE_FIELDS | ALWAYS_UPDATABLE_FIELDS):
            value = data[field]
            if field == "order_type":
                value = OrderType(value)
            setattr(order, field, value)
        await db.flush()

        await OrderLifecycle.apply_margin_changes(db, order, data)

        await log_event(
            db,
            AuditAction.ORDER_UPDATED,
            actor_id=actor.user_id,
            entity_type="order",
            entity_id=order.id,
            metadata={"fields": sorted(keys)},
        )
        return order

    @staticmethod
    async def change_status(db: AsyncSession, actor: Actor, order_id: int, new_status: OrderStatus) -> Order:
        new_status = OrderStatus(new_status)
        if new_status in APPROVAL_GATED_STATUSES:
            raise InvalidArgumentError(
                f"Status {new_status.value} is set only by the approval workflow",
                details={"status": new_status.value},
            )

        order = await load_order(db, order_id)
        await ensure_order_mutable(db, actor, order, allow_cancelled=True)

        old_status = order.status
        if new_status not in TRANSITIONS.get(old_status, set()):
            raise InvalidStateError(
                f"Cannot move order from {old_status.value} to {new_status.value}",
                details={"order_id": order.id, "from": old_status.value, "to": new_status.value},
            )
        if (old_status, new_status) in ADMIN_ONLY_TRANSITIONS and not actor.is_admin:
            raise InsufficientPermissionsError(
                f"Only admins can move an order from {old_status.value} to {new_status.value}"
            )

        if new_status == OrderStatus.COMPLETED:
            await OrderLifecycle._complete(db, order)

        order.status = new_status
        await db.flush()

        await log_event(
            db,
            AuditAction.ORDER_STATUS_CHANGED,
            actor_id=actor.user_id,
            entity_type="order",
            entity_id=order.id,
            metadata={"from": old_status.value, "to": new_status.value},
        )
        return order

    @staticmethod
    async def _complete(db: AsyncSession, order: Order) -> None:
        """
        Completion cascade.

        1. Confirm every draft profit/service charge
        2. No confirmed receipts/payments and not OTC: post amount_buy to the
           buy account and amount_sell from the sell account directly
        """
        await OrderSubLedger.confirm_margin_drafts(db, order)

        if await OrderSubLedger.has_confirmed(db, order.id):
            logger.info("Order %s completed from confirmed receipts/payments, no direct posting", order.id)
            return
        if order.order_type == OrderType.OTC:
            return
        if order.buy_account_id is None and order.sell_account_id is None:
            return

        await OrderLifecycle.post_direct(db, order)
        logger.info("Order %s completed with direct account postings", order.id)

    @staticmethod
    async def post_direct(db: AsyncSession, order: Order, amended: bool = False) -> None:
        suffix = " (Amended)" if amended else ""
        if order.buy_account_id is not None:
            await AccountLedger.post_entry(
                db, order.buy_account_id, TransactionType.ADD, order.amount_buy,
                f"Order #{order.id} - Receipt from customer{suffix}",
            )
        if order.sell_account_id is not None:
            await AccountLedger.post_entry(
                db, order.sell_account_id, TransactionType.WITHDRAW, order.amount_sell,
                f"Order #{order.id} - Payment to customer{suffix}",
            )
        order.direct_postings_applied = True
        await db.flush()

    reverse_direct = staticmethod(reverse_direct_postings)

    @staticmethod
    async def destroy_order(db: AsyncSession, order: Order, actor_id: Optional[int], cause: str = "Order deleted") -> List[str]:
        """
        Reverse everything the order posted and delete it with its rows.

        Returns:
            Image paths to remove after commit
        """
        image_paths = await OrderSubLedger.remove_all(db, order, cause)
        if order.direct_postings_applied:
            await OrderLifecycle.reverse_direct(
                db, order, cause,
                order.buy_account_id, order.sell_account_id,
                order.amount_buy, order.amount_sell,
            )

        order_id = order.id
        await db.delete(order)
        await db.flush()

        await log_event(
            db,
            AuditAction.ORDER_DELETED,
            actor_id=actor_id,
            entity_type="order",
            entity_id=order_id,
            metadata={"cause": cause},
        )
        logger.info("Order %s deleted (%s)", order_id, cause)
        return await unreferenced_images(db, image_paths)

    @staticmethod
    async def delete_order(db: AsyncSession, actor: Actor, order_id: int) -> List[str]:
        """Admin-direct delete."""
        if not actor.is_admin:
            raise InsufficientPermissionsError("Only admins can delete orders directly; request a delete instead")

        order = await load_order(db, order_id)
        if order.status in APPROVAL_GATED_STATUSES:
            raise ConflictError(
                f"Order {order.id} is awaiting approval ({order.status.value})",
                details={"order_id": order.id},
            )
        await ensure_no_pending_request(db, ApprovalEntityType.ORDER, order.id)

        return await OrderLifecycle.destroy_order(db, order, actor.user_id)

    @staticmethod
    async def list_orders(
        db: AsyncSession,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Order]:
        query = select(Order)
        if status is not None:
            query = query.where(Order.status == status)
        if customer_id is not None:
            query = query.where(Order.customer_id == customer_id)
        query = query.order_by(desc(Order.created_at), desc(Order.id)).offset(offset).limit(limit)
        result = await db.execute(query)
        return result.scalars().all()
