"""
Order Sub-Ledger (Domain Logic).

Draft/confirmed lifecycle for the four per-order row kinds:

    receipt         customer -> buy account       add
    payment         sell account -> customer      withdraw
    profit          booked margin                 add
    service charge  > 0 add, < 0 withdraw (we pay)

Drafts never touch balances. Confirmation is one-way and posts exactly one
AccountTransaction; removing a confirmed row always posts its exact inverse.
"""

import enum
import logging
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    InvalidArgumentError,
    InvalidStateError,
    MissingAccountError,
    ResourceNotFoundError,
)
from backend.app.core.permissions import Actor
from backend.app.domain.ledger.account_ledger import AccountLedger
from backend.app.domain.orders.access import ensure_order_mutable, load_order
from backend.app.domain.orders.flex_reconciler import FlexExcess, FlexOrderReconciler
from backend.app.models.account import AccountTransaction
from backend.app.models.enums import SubLedgerStatus, TransactionType
from backend.app.models.expense import Expense
from backend.app.models.order import Order
from backend.app.models.order_ledger import (
    OrderPayment,
    OrderProfit,
    OrderReceipt,
    OrderServiceCharge,
)
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)


class SubLedgerKind(str, enum.Enum):
    RECEIPT = "receipt"
    PAYMENT = "payment"
    PROFIT = "profit"
    SERVICE_CHARGE = "service_charge"

    @property
    def model(self):
        return ROW_MODELS[self]

    @property
    def title(self) -> str:
        return self.value.replace("_", " ").capitalize()


ROW_MODELS = {
    SubLedgerKind.RECEIPT: OrderReceipt,
    SubLedgerKind.PAYMENT: OrderPayment,
    SubLedgerKind.PROFIT: OrderProfit,
    SubLedgerKind.SERVICE_CHARGE: OrderServiceCharge,
}

# Rows carrying proof images
DOCUMENT_KINDS = (SubLedgerKind.RECEIPT, SubLedgerKind.PAYMENT)
# Margin rows, one row per status per order
MARGIN_KINDS = (SubLedgerKind.PROFIT, SubLedgerKind.SERVICE_CHARGE)

DOCUMENT_FIELDS = {"amount", "account_id", "image_path"}
MARGIN_FIELDS = {"amount", "account_id", "currency_code"}


def posting_for(kind: SubLedgerKind, amount: float) -> Tuple[TransactionType, float, str]:
    """(direction, magnitude, label) a confirmed row of this kind posts."""
    if kind == SubLedgerKind.RECEIPT:
        return TransactionType.ADD, amount, "Receipt from customer"
    if kind == SubLedgerKind.PAYMENT:
        return TransactionType.WITHDRAW, amount, "Payment to customer"
    if kind == SubLedgerKind.PROFIT:
        return TransactionType.ADD, amount, "Profit"
    if amount > 0:
        return TransactionType.ADD, amount, "Service charge"
    return TransactionType.WITHDRAW, abs(amount), "Service charge paid by us"


def posting_description(order_id: int, label: str) -> str:
    return f"Order #{order_id} - {label}"


def reversal_description(order_id: int, label: str, cause: str) -> str:
    return f"Order #{order_id} - Reversal of {label[0].lower()}{label[1:]} ({cause})"


def validate_amount(kind: SubLedgerKind, amount) -> float:
    if amount is None:
        raise InvalidArgumentError(f"{kind.title} amount is required")
    amount = float(amount)
    if kind == SubLedgerKind.SERVICE_CHARGE:
        if amount == 0:
            raise InvalidArgumentError("Service charge amount must be non-zero")
    elif amount <= 0:
        raise InvalidArgumentError(f"{kind.title} amount must be positive", details={"amount": amount})
    return amount


def leg_currency(kind: SubLedgerKind, order: Order, currency_code: Optional[str] = None) -> Optional[str]:
    """Currency the row's account must be held in."""
    if kind == SubLedgerKind.RECEIPT:
        return order.from_currency
    if kind == SubLedgerKind.PAYMENT:
        return order.to_currency
    return currency_code


async def reverse_direct_postings(
    db: AsyncSession,
    order: Order,
    cause: str,
    buy_account_id: Optional[int],
    sell_account_id: Optional[int],
    amount_buy: float,
    amount_sell: float
) -> None:
    """Undo the completion postings made with the given (previous) values."""
    if buy_account_id is not None:
        await AccountLedger.post_entry(
            db, buy_account_id, TransactionType.WITHDRAW, amount_buy,
            reversal_description(order.id, "Receipt from customer", cause),
        )
    if sell_account_id is not None:
        await AccountLedger.post_entry(
            db, sell_account_id, TransactionType.ADD, amount_sell,
            reversal_description(order.id, "Payment to customer", cause),
        )
    order.direct_postings_applied = False
    await db.flush()


async def unreferenced_images(db: AsyncSession, paths) -> List[str]:
    """
    The given image paths that no receipt, payment or live expense row
    references. Only these are safe to delete from storage.
    """
    candidates = list(dict.fromkeys(path for path in paths if path))
    if not candidates:
        return []

    referenced = set()
    for query in (
        select(OrderReceipt.image_path).where(OrderReceipt.image_path.in_(candidates)),
        select(OrderPayment.image_path).where(OrderPayment.image_path.in_(candidates)),
        select(Expense.image_path).where(Expense.image_path.in_(candidates), Expense.deleted_at.is_(None)),
    ):
        referenced.update((await db.execute(query)).scalars().all())

    return [path for path in candidates if path not in referenced]


class OrderSubLedger:

    @staticmethod
    async def get_row(db: AsyncSession, kind: SubLedgerKind, row_id: int):
        row = await db.get(kind.model, row_id)
        if row is None:
            raise ResourceNotFoundError(kind.title, row_id)
        return row

    @staticmethod
    async def list_rows(
        db: AsyncSession,
        kind: SubLedgerKind,
        order_id: int,
        status: Optional[SubLedgerStatus] = None
    ) -> list:
        model = kind.model
        query = select(model).where(model.order_id == order_id)
        if status is not None:
            query = query.where(model.status == status)
        result = await db.execute(query.order_by(model.created_at, model.id))
        return result.scalars().all()

    @staticmethod
    async def has_confirmed(db: AsyncSession, order_id: int, kinds=DOCUMENT_KINDS) -> bool:
        for kind in kinds:
            model = kind.model
            result = await db.execute(
                select(model.id).where(
                    model.order_id == order_id,
                    model.status == SubLedgerStatus.CONFIRMED,
                ).limit(1)
            )
            if result.first() is not None:
                return True
        return False

    # Postings

    @staticmethod
    async def post_row(
        db: AsyncSession,
        kind: SubLedgerKind,
        row,
        order_id: int,
        amended: bool = False
    ) -> AccountTransaction:
        if row.account_id is None:
            raise MissingAccountError(kind.title, row.id)
        direction, amount, label = posting_for(kind, row.amount)
        if amended:
            label = f"{label} (Amended)"
        return await AccountLedger.post_entry(
            db, row.account_id, direction, amount, posting_description(order_id, label)
        )

    @staticmethod
    async def reverse_row(
        db: AsyncSession,
        kind: SubLedgerKind,
        row,
        order_id: int,
        cause: str
    ) -> AccountTransaction:
        direction, amount, label = posting_for(kind, row.amount)
        return await AccountLedger.reverse_entry(
            db, row.account_id, direction, amount, reversal_description(order_id, label, cause)
        )

    # Draft lifecycle

    @staticmethod
    async def create_draft(
        db: AsyncSession,
        actor: Actor,
        kind: SubLedgerKind,
        order_id: int,
        amount: float,
        account_id: Optional[int] = None,
        image_path: Optional[str] = None,
        currency_code: Optional[str] = None
    ):
        """New draft row; no balance effect."""
        order = await load_order(db, order_id)
        await ensure_order_mutable(db, actor, order)

        amount = validate_amount(kind, amount)
        account = await AccountLedger.validate_account(
            db, account_id, leg_currency(kind, order, currency_code), kind.title
        )

        fields = {"order_id": order.id, "account_id": account_id, "amount": amount, "status": SubLedgerStatus.DRAFT}
        if kind in DOCUMENT_KINDS:
            fields["image_path"] = image_path
        else:
            fields["currency_code"] = currency_code or (account.currency_code if account else None)

        row = kind.model(**fields)
        db.add(row)
        await db.flush()
        return row

    @staticmethod
    async def update_draft(
        db: AsyncSession,
        actor: Actor,
        kind: SubLedgerKind,
        row_id: int,
        fields: dict
    ) -> Tuple[object, Optional[str]]:
        """
        Patch a draft row.

        Returns:
            (row, replaced image path to delete after commit or None)
        """
        row = await OrderSubLedger.get_row(db, kind, row_id)
        if row.status != SubLedgerStatus.DRAFT:
            raise InvalidStateError(
                f"Only draft {kind.value}s can be edited",
                details={"id": row.id, "status": row.status.value},
            )
        order = await load_order(db, row.order_id)
        await ensure_order_mutable(db, actor, order)

        allowed = DOCUMENT_FIELDS if kind in DOCUMENT_KINDS else MARGIN_FIELDS
        unknown = set(fields) - allowed
        if unknown:
            raise InvalidArgumentError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if "amount" in fields:
            fields["amount"] = validate_amount(kind, fields["amount"])
        currency = fields.get("currency_code", getattr(row, "currency_code", None))
        account_id = fields.get("account_id", row.account_id)
        if "account_id" in fields or "currency_code" in fields:
            await AccountLedger.validate_account(db, account_id, leg_currency(kind, order, currency), kind.title)

        replaced_image = None
        if "image_path" in fields and fields["image_path"] != row.image_path:
            replaced_image = row.image_path

        for key, value in fields.items():
            setattr(row, key, value)
        await db.flush()

        if replaced_image and not await unreferenced_images(db, [replaced_image]):
            replaced_image = None
        return row, replaced_image

    @staticmethod
    async def delete_draft(db: AsyncSession, actor: Actor, kind: SubLedgerKind, row_id: int) -> Optional[str]:
        """Remove a draft row. Returns its image path for post-commit cleanup."""
        row = await OrderSubLedger.get_row(db, kind, row_id)
        if row.status != SubLedgerStatus.DRAFT:
            raise InvalidStateError(
                f"Only draft {kind.value}s can be deleted",
                details={"id": row.id, "status": row.status.value},
            )
        order = await load_order(db, row.order_id)
        await ensure_order_mutable(db, actor, order)

        image_path = getattr(row, "image_path", None)
        await db.delete(row)
        await db.flush()

        if image_path and not await unreferenced_images(db, [image_path]):
            return None
        return image_path

    @staticmethod
    async def confirm(
        db: AsyncSession,
        actor: Actor,
        kind: SubLedgerKind,
        row_id: int
    ) -> Tuple[object, Optional[FlexExcess]]:
        """
        Confirm a draft row and post it.

        Flow:
        1. Row must be draft with an account (InvalidState / MissingAccount)
        2. Order must accept direct changes from the actor
        3. Direct-posted order, first document: reverse the completion postings
        4. Post one AccountTransaction, flip the row to confirmed
        5. Flex orders: recompute actual amounts

        Returns:
            (row, FlexExcess if a flex payment overshot the expected amount)
        """
        row = await OrderSubLedger.get_row(db, kind, row_id)
        if row.status != SubLedgerStatus.DRAFT:
            raise InvalidStateError(
                f"{kind.title} {row.id} is already confirmed",
                details={"id": row.id, "status": row.status.value},
            )
        if row.account_id is None:
            raise MissingAccountError(kind.title, row.id)

        order = await load_order(db, row.order_id)
        await ensure_order_mutable(db, actor, order)
        await AccountLedger.validate_account(
            db, row.account_id, leg_currency(kind, order, getattr(row, "currency_code", None)), kind.title
        )

        # Documents supersede the completion postings of a direct-posted order
        if kind in DOCUMENT_KINDS and order.direct_postings_applied:
            await reverse_direct_postings(
                db, order, f"Superseded by confirmed {kind.value}",
                order.buy_account_id, order.sell_account_id,
                order.amount_buy, order.amount_sell,
            )

        await OrderSubLedger.post_row(db, kind, row, order.id)
        row.status = SubLedgerStatus.CONFIRMED
        await db.flush()

        excess = None
        if order.is_flex_order:
            if kind == SubLedgerKind.RECEIPT:
                await FlexOrderReconciler.on_receipt_confirmed(db, order)
            elif kind == SubLedgerKind.PAYMENT:
                excess = await FlexOrderReconciler.on_payment_confirmed(db, order)

        await log_event(
            db,
            AuditAction.SUBLEDGER_CONFIRMED,
            actor_id=actor.user_id,
            entity_type=kind.value,
            entity_id=row.id,
            metadata={"order_id": order.id, "amount": row.amount, "account_id": row.account_id},
        )
        return row, excess

    # Bulk operations used by the lifecycle and approval flows

    @staticmethod
    async def confirm_margin_drafts(db: AsyncSession, order: Order) -> int:
        """Confirm every remaining draft profit/service charge (completion cascade)."""
        drafts = []
        for kind in MARGIN_KINDS:
            for row in await OrderSubLedger.list_rows(db, kind, order.id, SubLedgerStatus.DRAFT):
                if row.account_id is None:
                    raise MissingAccountError(kind.title, row.id)
                drafts.append((kind, row))

        for kind, row in drafts:
            await OrderSubLedger.post_row(db, kind, row, order.id)
            row.status = SubLedgerStatus.CONFIRMED
        await db.flush()
        return len(drafts)

    @staticmethod
    async def replace_margin(
        db: AsyncSession,
        kind: SubLedgerKind,
        order: Order,
        status: SubLedgerStatus,
        amount: Optional[float],
        account_id: Optional[int] = None,
        currency_code: Optional[str] = None,
        cause: str = "Order amended"
    ):
        """
        Delete every row of this kind and status, then insert one new row.

        Confirmed rows are reversed before deletion and the new row is posted,
        so the net balance effect is new amount minus old amount. A falsy
        amount only clears.
        """
        if amount:
            amount = validate_amount(kind, amount)
            account = await AccountLedger.validate_account(db, account_id, currency_code, kind.title)
            if status == SubLedgerStatus.CONFIRMED and account is None:
                raise MissingAccountError(kind.title, order.id)
            if currency_code is None and account is not None:
                currency_code = account.currency_code

        existing = await OrderSubLedger.list_rows(db, kind, order.id, status)
        for row in existing:
            if status == SubLedgerStatus.CONFIRMED:
                await OrderSubLedger.reverse_row(db, kind, row, order.id, cause)
            await db.delete(row)
        await db.flush()

        if not amount:
            return None

        row = kind.model(
            order_id=order.id,
            account_id=account_id,
            amount=amount,
            currency_code=currency_code,
            status=status,
        )
        db.add(row)
        await db.flush()
        if status == SubLedgerStatus.CONFIRMED:
            await OrderSubLedger.post_row(db, kind, row, order.id, amended=bool(existing))
        return row

    @staticmethod
    async def remove_all(db: AsyncSession, order: Order, cause: str) -> List[str]:
        """
        Reverse every confirmed row of the order and delete all rows.

        Returns:
            Image paths referenced by the removed rows
        """
        image_paths = []
        for kind in SubLedgerKind:
            for row in await OrderSubLedger.list_rows(db, kind, order.id):
                if row.status == SubLedgerStatus.CONFIRMED:
                    await OrderSubLedger.reverse_row(db, kind, row, order.id, cause)
                if kind in DOCUMENT_KINDS and row.image_path:
                    image_paths.append(row.image_path)
                await db.delete(row)
        await db.flush()
        return image_paths
