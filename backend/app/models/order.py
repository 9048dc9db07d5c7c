"""
Order database model.

A customer trade of amount_buy in from_currency for amount_sell in to_currency.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, String, Text, Boolean
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import OrderStatus, OrderType, enum_column


class Order(Base):
    """
    Order model.

    Status is owned by the lifecycle state machine; the actual_* columns are
    only maintained for flex orders, whose fill is reconciled from receipts.
    """
    __tablename__ = "orders"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, nullable=False, index=True)

    # Trade
    from_currency = Column(String(16), nullable=False)
    to_currency = Column(String(16), nullable=False)
    amount_buy = Column(Float, nullable=False)  # What the customer gives us
    amount_sell = Column(Float, nullable=False)  # What we give the customer
    rate = Column(Float, nullable=False)

    # Flex reconciliation
    is_flex_order = Column(Boolean, default=False, nullable=False)
    actual_amount_buy = Column(Float, nullable=True)
    actual_amount_sell = Column(Float, nullable=True)
    actual_rate = Column(Float, nullable=True)

    status = Column(enum_column(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    order_type = Column(enum_column(OrderType), default=OrderType.ONLINE, nullable=False)

    # Accounts: buy = where customer money lands, sell = where we pay from
    buy_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    sell_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    # Set when completion posted amount_buy / amount_sell straight to the accounts
    direct_postings_applied = Column(Boolean, default=False, nullable=False)

    handler_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    remarks = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def effective_rate(self) -> float:
        return self.actual_rate or self.rate

    def __repr__(self):
        return f"<Order(id={self.id}, status='{self.status.value}', {self.from_currency}->{self.to_currency})>"
