"""
Entity snapshots captured when an approval request is created.

Snapshots are plain JSON and are never updated, so "original" data shown to
an approver cannot drift with in-flight edits.
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.domain.orders.sub_ledger import DOCUMENT_KINDS, OrderSubLedger, SubLedgerKind
from backend.app.models.enums import SubLedgerStatus
from backend.app.models.expense import Expense, InternalTransfer
from backend.app.models.order import Order
from backend.app.services.file_storage import FileStorage

ORDER_FIELDS = (
    "id", "customer_id", "from_currency", "to_currency",
    "amount_buy", "amount_sell", "rate",
    "actual_amount_buy", "actual_amount_sell", "actual_rate",
    "status", "order_type", "is_flex_order",
    "buy_account_id", "sell_account_id", "handler_id", "created_by",
    "remarks", "direct_postings_applied", "created_at",
)
EXPENSE_FIELDS = ("id", "account_id", "amount", "description", "image_path", "created_by", "created_at", "deleted_at")
TRANSFER_FIELDS = ("id", "from_account_id", "to_account_id", "amount", "description", "created_by", "created_at")


def _json_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def to_plain(obj, fields) -> Dict[str, Any]:
    return {name: _json_value(getattr(obj, name)) for name in fields}


def _row_dict(kind: SubLedgerKind, row, storage: Optional[FileStorage]) -> Dict[str, Any]:
    data = {
        "id": row.id,
        "account_id": row.account_id,
        "amount": row.amount,
        "status": row.status.value,
        "created_at": _json_value(row.created_at),
    }
    if kind in DOCUMENT_KINDS:
        data["image_path"] = storage.resolve_url(row.image_path) if storage else row.image_path
    else:
        data["currency_code"] = row.currency_code
    return data


async def resolved_rows(
    db: AsyncSession,
    kind: SubLedgerKind,
    order_id: int,
    storage: Optional[FileStorage] = None
) -> List[Dict[str, Any]]:
    """Confirmed rows, falling back to drafts when nothing is confirmed."""
    rows = await OrderSubLedger.list_rows(db, kind, order_id, SubLedgerStatus.CONFIRMED)
    if not rows:
        rows = await OrderSubLedger.list_rows(db, kind, order_id, SubLedgerStatus.DRAFT)
    return [_row_dict(kind, row, storage) for row in rows]


async def snapshot_order(db: AsyncSession, order: Order, storage: Optional[FileStorage] = None) -> Dict[str, Any]:
    data = to_plain(order, ORDER_FIELDS)
    data["receipts"] = await resolved_rows(db, SubLedgerKind.RECEIPT, order.id, storage)
    data["payments"] = await resolved_rows(db, SubLedgerKind.PAYMENT, order.id, storage)
    data["profits"] = await resolved_rows(db, SubLedgerKind.PROFIT, order.id, storage)
    data["service_charges"] = await resolved_rows(db, SubLedgerKind.SERVICE_CHARGE, order.id, storage)
    return data


def snapshot_expense(expense: Expense, storage: Optional[FileStorage] = None) -> Dict[str, Any]:
    data = to_plain(expense, EXPENSE_FIELDS)
    if storage:
        data["image_path"] = storage.resolve_url(expense.image_path)
    return data


def snapshot_transfer(transfer: InternalTransfer) -> Dict[str, Any]:
    return to_plain(transfer, TRANSFER_FIELDS)
