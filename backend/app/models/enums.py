"""
Ledger enumerations.

Stored by value (lowercase strings) so rows stay readable from plain SQL.
"""

import enum
from sqlalchemy import Enum


def enum_column(enum_cls):
    """Column type storing the enum's values rather than its member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class OrderStatus(str, enum.Enum):
    """
    Order lifecycle.

    pending -> under_process -> completed | cancelled
    completed <-> pending_amend | pending_delete (approval gate)
    """
    PENDING = "pending"
    UNDER_PROCESS = "under_process"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PENDING_AMEND = "pending_amend"
    PENDING_DELETE = "pending_delete"


class OrderType(str, enum.Enum):
    ONLINE = "online"
    OTC = "otc"


class SubLedgerStatus(str, enum.Enum):
    """Only confirmed rows affect account balances."""
    DRAFT = "draft"
    CONFIRMED = "confirmed"


class TransactionType(str, enum.Enum):
    ADD = "add"  # Money entering the account
    WITHDRAW = "withdraw"  # Money leaving the account


class ApprovalEntityType(str, enum.Enum):
    ORDER = "order"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class ApprovalRequestType(str, enum.Enum):
    EDIT = "edit"
    DELETE = "delete"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Capability(str, enum.Enum):
    """Action keys stored in a role's permissions JSON."""
    DELETE_ORDER = "deleteOrder"  # Only admins hold this
    REQUEST_ORDER_EDIT = "requestOrderEdit"
    REQUEST_ORDER_DELETE = "requestOrderDelete"
    APPROVE_ORDER_EDIT = "approveOrderEdit"
    APPROVE_ORDER_DELETE = "approveOrderDelete"
