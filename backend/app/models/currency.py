"""
Currency database model.

Only the rate columns are consulted by the ledger (rate inference); the rest
of currency management lives outside this service.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean
from backend.app.db.session import Base


class Currency(Base):
    __tablename__ = "currencies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(16), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)

    base_rate_buy = Column(Float, nullable=True)
    conversion_rate_buy = Column(Float, nullable=True)
    base_rate_sell = Column(Float, nullable=True)
    conversion_rate_sell = Column(Float, nullable=True)

    active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<Currency(code='{self.code}', conversion_rate_buy={self.conversion_rate_buy})>"
