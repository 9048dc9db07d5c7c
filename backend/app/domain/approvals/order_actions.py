"""
Approved order amendments and deletions.

Runs inside the approver's transaction; every reversal and re-posting here
either commits together with the request decision or not at all.
"""

import logging
from typing import Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InvalidArgumentError, MissingAccountError
from backend.app.domain.ledger.account_ledger import AccountLedger
from backend.app.domain.orders.flex_reconciler import FlexOrderReconciler
from backend.app.domain.orders.lifecycle import (
    ALWAYS_UPDATABLE_FIELDS,
    CORE_FIELDS,
    OrderLifecycle,
    margin_inputs,
    validate_trade,
)
from backend.app.domain.orders.sub_ledger import (
    DOCUMENT_KINDS,
    MARGIN_KINDS,
    OrderSubLedger,
    SubLedgerKind,
    unreferenced_images,
    validate_amount,
)
from backend.app.models.enums import OrderType, SubLedgerStatus
from backend.app.models.order import Order
from backend.app.services.file_storage import FileStorage

logger = logging.getLogger(__name__)

AMEND_CAUSE = "Order amended"
SCALAR_FIELDS = CORE_FIELDS | ALWAYS_UPDATABLE_FIELDS
POSTED_FIELDS = ("amount_buy", "amount_sell", "buy_account_id", "sell_account_id")

DOCUMENT_INPUTS = {
    SubLedgerKind.RECEIPT: ("receipts", "amount_buy", "buy_account_id"),
    SubLedgerKind.PAYMENT: ("payments", "amount_sell", "sell_account_id"),
}


def amendment_image(item: Dict, storage: Optional[FileStorage] = None) -> Optional[str]:
    """New upload wins; otherwise the unchanged current image is reused."""
    image = item.get("new_image_path") or item.get("current_image_path") or item.get("image_path")
    if storage is not None:
        return storage.normalize(image)
    return image


async def uploaded_images(
    db: AsyncSession,
    request_data: Optional[Dict],
    original: Optional[Dict],
    storage: Optional[FileStorage] = None
) -> List[str]:
    """
    Images uploaded for an amendment that the original rows never referenced
    and no stored row references now. These are orphaned when the request is
    rejected.
    """
    if not request_data:
        return []

    def norm(path):
        return storage.normalize(path) if storage else path

    known = set()
    for key in ("receipts", "payments"):
        for row in (original or {}).get(key) or []:
            if row.get("image_path"):
                known.add(norm(row["image_path"]))

    uploaded = []
    for key in ("receipts", "payments"):
        for item in request_data.get(key) or []:
            for path in (item.get("new_image_path"), item.get("image_path")):
                path = norm(path)
                if path and path not in known and path not in uploaded:
                    uploaded.append(path)
    return await unreferenced_images(db, uploaded)


async def _validate_amendment(db: AsyncSession, order: Order, data: Dict, merged: Dict) -> None:
    """Every check that can fail runs before the first posting."""
    validate_trade(merged["from_currency"], merged["to_currency"], merged["amount_buy"], merged["amount_sell"], merged["rate"])
    await OrderLifecycle.validate_order_accounts(
        db, merged["from_currency"], merged["to_currency"], merged["buy_account_id"], merged["sell_account_id"]
    )

    for kind, (key, amount_field, account_field) in DOCUMENT_INPUTS.items():
        currency = merged["from_currency"] if kind == SubLedgerKind.RECEIPT else merged["to_currency"]
        items = data.get(key)
        if items is not None:
            for index, item in enumerate(items):
                validate_amount(kind, item.get("amount"))
                account_id = item.get("account_id") or merged[account_field]
                if account_id is None:
                    raise MissingAccountError(kind.title, index)
                await AccountLedger.validate_account(db, account_id, currency, kind.title)
        elif amount_field in data:
            confirmed = await OrderSubLedger.list_rows(db, kind, order.id, SubLedgerStatus.CONFIRMED)
            if confirmed:
                delta = merged[amount_field] - getattr(order, amount_field)
                if confirmed[0].amount + delta <= 0:
                    raise InvalidArgumentError(
                        f"Amended {amount_field} would leave the first {kind.value} non-positive",
                        details={"row_id": confirmed[0].id, "delta": delta},
                    )

    for kind in MARGIN_KINDS:
        inputs = margin_inputs(data, kind)
        if inputs.get("amount"):
            validate_amount(kind, inputs["amount"])
        await AccountLedger.validate_account(db, inputs.get("account_id"), inputs.get("currency"), kind.title)


async def _replace_documents(
    db: AsyncSession,
    order: Order,
    kind: SubLedgerKind,
    items: List[Dict],
    default_account_id: Optional[int],
    storage: Optional[FileStorage]
) -> List[str]:
    """
    Reverse and delete every confirmed row, recreate confirmed rows from items.

    Returns:
        Previous image paths no new row reuses
    """
    existing = await OrderSubLedger.list_rows(db, kind, order.id, SubLedgerStatus.CONFIRMED)
    old_images = []
    for row in existing:
        await OrderSubLedger.reverse_row(db, kind, row, order.id, AMEND_CAUSE)
        if row.image_path:
            old_images.append(storage.normalize(row.image_path) if storage else row.image_path)
        await db.delete(row)
    await db.flush()

    reused = set()
    for item in items:
        image = amendment_image(item, storage)
        if image:
            reused.add(image)
        row = kind.model(
            order_id=order.id,
            account_id=item.get("account_id") or default_account_id,
            amount=float(item["amount"]),
            image_path=image,
            status=SubLedgerStatus.CONFIRMED,
        )
        db.add(row)
        await db.flush()
        await OrderSubLedger.post_row(db, kind, row, order.id, amended=True)

    return [path for path in old_images if path not in reused]


async def _adjust_first_confirmed(db: AsyncSession, order: Order, kind: SubLedgerKind, delta: float) -> None:
    """Move the amount delta onto the earliest confirmed row only."""
    confirmed = await OrderSubLedger.list_rows(db, kind, order.id, SubLedgerStatus.CONFIRMED)
    if not confirmed:
        return
    first = confirmed[0]
    await OrderSubLedger.reverse_row(db, kind, first, order.id, AMEND_CAUSE)
    first.amount = first.amount + delta
    await db.flush()
    await OrderSubLedger.post_row(db, kind, first, order.id, amended=True)


async def apply_order_amendment(
    db: AsyncSession,
    order: Order,
    data: Dict,
    storage: Optional[FileStorage] = None
) -> List[str]:
    """
    Apply an approved edit to an order.

    Flow:
    1. Validate the merged result (trade, accounts, row amounts)
    2. Write scalar fields
    3. Receipts/payments: explicit arrays replace the confirmed set; a bare
       amount change moves the delta onto the first confirmed row
    4. Direct completion postings follow the new amounts/accounts
    5. Profit/service charge replaced (confirmed when finalized)

    Returns:
        Image paths that are no longer referenced
    """
    scalars = {key: data[key] for key in data if key in SCALAR_FIELDS}
    merged = {field: scalars.get(field, getattr(order, field)) for field in SCALAR_FIELDS}
    previous = {field: getattr(order, field) for field in POSTED_FIELDS}

    await _validate_amendment(db, order, data, merged)

    for field, value in scalars.items():
        if field == "order_type":
            value = OrderType(value)
        setattr(order, field, value)
    await db.flush()

    stale_images = []
    documents_replaced = False
    for kind, (key, amount_field, account_field) in DOCUMENT_INPUTS.items():
        items = data.get(key)
        if items is not None:
            stale_images += await _replace_documents(db, order, kind, items, getattr(order, account_field), storage)
            documents_replaced = True
        elif amount_field in scalars:
            delta = getattr(order, amount_field) - previous[amount_field]
            if delta:
                await _adjust_first_confirmed(db, order, kind, delta)

    if order.direct_postings_applied:
        changed = any(previous[field] != getattr(order, field) for field in POSTED_FIELDS)
        has_documents = await OrderSubLedger.has_confirmed(db, order.id, DOCUMENT_KINDS)
        if has_documents or changed:
            await OrderLifecycle.reverse_direct(
                db, order, AMEND_CAUSE,
                previous["buy_account_id"], previous["sell_account_id"],
                previous["amount_buy"], previous["amount_sell"],
            )
            if not has_documents:
                await OrderLifecycle.post_direct(db, order, amended=True)

    if order.is_flex_order and documents_replaced:
        await FlexOrderReconciler.on_receipt_confirmed(db, order)

    await OrderLifecycle.apply_margin_changes(db, order, data, cause=AMEND_CAUSE)

    logger.info("Order %s amended (fields: %s)", order.id, sorted(data))
    return stale_images


async def execute_order_delete(db: AsyncSession, order: Order, actor_id: int) -> List[str]:
    return await OrderLifecycle.destroy_order(db, order, actor_id, cause="Order deleted")
