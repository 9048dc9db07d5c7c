"""
Order sub-ledger database models.

Receipts and payments record money actually moved for an order; profit and
service charge rows book the order's margin. All four share the draft ->
confirmed lifecycle and only confirmed rows have touched account balances.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, String
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import SubLedgerStatus, enum_column


class OrderReceipt(Base):
    """Money received from the customer into the order's buy account."""
    __tablename__ = "order_receipts"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    amount = Column(Float, nullable=False)
    image_path = Column(String(500), nullable=True)
    status = Column(enum_column(SubLedgerStatus), default=SubLedgerStatus.DRAFT, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<OrderReceipt(id={self.id}, order={self.order_id}, amount={self.amount}, status='{self.status.value}')>"


class OrderPayment(Base):
    """Money paid out to the customer from the order's sell account."""
    __tablename__ = "order_payments"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    amount = Column(Float, nullable=False)
    image_path = Column(String(500), nullable=True)
    status = Column(enum_column(SubLedgerStatus), default=SubLedgerStatus.DRAFT, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<OrderPayment(id={self.id}, order={self.order_id}, amount={self.amount}, status='{self.status.value}')>"


class OrderProfit(Base):
    __tablename__ = "order_profits"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    amount = Column(Float, nullable=False)
    currency_code = Column(String(16), nullable=True)
    status = Column(enum_column(SubLedgerStatus), default=SubLedgerStatus.DRAFT, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OrderServiceCharge(Base):
    """Service charge; a negative amount means we pay the charge."""
    __tablename__ = "order_service_charges"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    amount = Column(Float, nullable=False)
    currency_code = Column(String(16), nullable=True)
    status = Column(enum_column(SubLedgerStatus), default=SubLedgerStatus.DRAFT, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
