"""
Account and AccountTransaction database models.

An account's balance is a running total; every change to it is mirrored by
exactly one append-only AccountTransaction row.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, String, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import TransactionType, enum_column


class Account(Base):
    """
    Internal money account held in a single currency.

    Balances may go negative (staff sometimes front funds). Mutated only
    through AccountLedger.post_entry.
    """
    __tablename__ = "accounts"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    currency_code = Column(String(16), nullable=False, index=True)
    balance = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Account(id={self.id}, currency='{self.currency_code}', balance={self.balance})>"


class AccountTransaction(Base):
    """
    Immutable record of a balance movement.

    NO updates or deletions allowed: corrections are posted as offsetting rows.
    """
    __tablename__ = "account_transactions"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_account_transactions_amount_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    type = Column(enum_column(TransactionType), nullable=False)
    amount = Column(Float, nullable=False)
    description = Column(String(255), nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def signed_amount(self) -> float:
        return self.amount if self.type == TransactionType.ADD else -self.amount

    def __repr__(self):
        return f"<AccountTransaction(id={self.id}, type='{self.type.value}', amount={self.amount})>"
