"""
Rate Inference (Domain Logic).

Orders quote one rate for a currency pair without saying which leg it is
expressed in. The base leg is inferred from the magnitude of each
currency's reference rate: a "unit-like" currency (rate <= 1, e.g. USD or
USDT against a local currency table) is the multiplier side.

    base is from:  sell = buy * rate    buy = sell / rate
    base is to:    sell = buy / rate    buy = sell * rate
"""

from typing import Dict, Iterable, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InvalidArgumentError
from backend.app.models.currency import Currency

# Treated as unit-like when it has no usable rate in the table
UNIT_LIKE_FALLBACK = "USDT"


def reference_rate(currency: Currency) -> Optional[float]:
    """First stored rate (0.0 included), preferring the buy-side conversion rate."""
    for rate in (
        currency.conversion_rate_buy,
        currency.base_rate_buy,
        currency.base_rate_sell,
        currency.conversion_rate_sell,
    ):
        if rate is not None:
            return rate
    return None


def is_unit_like(code: str, rate: Optional[float]) -> bool:
    if rate is None:
        return code == UNIT_LIKE_FALLBACK
    return rate <= 1


def base_is_from(
    from_ccy: str,
    to_ccy: str,
    from_rate: Optional[float],
    to_rate: Optional[float]
) -> bool:
    """
    Decide whether the from-leg is the base (multiplier) side.

    1. Both unit-like -> from is base
    2. Exactly one unit-like -> that side is base
    3. Neither unit-like, both rates known -> smaller rate is base
    4. Otherwise -> from is base
    """
    from_unit = is_unit_like(from_ccy, from_rate)
    to_unit = is_unit_like(to_ccy, to_rate)

    if from_unit and to_unit:
        return True
    if from_unit != to_unit:
        return from_unit
    if from_rate is not None and to_rate is not None:
        return from_rate < to_rate
    return True


def _check_rate(rate: float) -> None:
    if rate is None or rate <= 0:
        raise InvalidArgumentError("Rate must be positive", details={"rate": rate})


def convert(
    amount_buy: float,
    rate: float,
    from_ccy: str,
    to_ccy: str,
    from_rate: Optional[float] = None,
    to_rate: Optional[float] = None
) -> float:
    """Amount the customer receives (to-leg) for amount_buy of the from-leg."""
    _check_rate(rate)
    if base_is_from(from_ccy, to_ccy, from_rate, to_rate):
        return amount_buy * rate
    return amount_buy / rate


def invert(
    amount_sell: float,
    rate: float,
    from_ccy: str,
    to_ccy: str,
    from_rate: Optional[float] = None,
    to_rate: Optional[float] = None
) -> float:
    """Algebraic inverse of convert."""
    _check_rate(rate)
    if base_is_from(from_ccy, to_ccy, from_rate, to_rate):
        return amount_sell / rate
    return amount_sell * rate


class RateInferenceEngine:
    """
    convert/invert bound to a snapshot of the currency table.

    Usage:
        engine = await RateInferenceEngine.load(db, [order.from_currency, order.to_currency])
        sell = engine.convert(100, order.rate, order.from_currency, order.to_currency)
    """

    def __init__(self, rates: Optional[Dict[str, Optional[float]]] = None):
        self.rates = dict(rates or {})

    @classmethod
    async def load(cls, db: AsyncSession, codes: Optional[Iterable[str]] = None) -> "RateInferenceEngine":
        query = select(Currency).where(Currency.active == True)  # noqa: E712
        if codes is not None:
            query = query.where(Currency.code.in_(set(codes)))
        result = await db.execute(query)
        return cls({c.code: reference_rate(c) for c in result.scalars().all()})

    def base_is_from(self, from_ccy: str, to_ccy: str) -> bool:
        return base_is_from(from_ccy, to_ccy, self.rates.get(from_ccy), self.rates.get(to_ccy))

    def convert(self, amount_buy: float, rate: float, from_ccy: str, to_ccy: str) -> float:
        return convert(amount_buy, rate, from_ccy, to_ccy, self.rates.get(from_ccy), self.rates.get(to_ccy))

    def invert(self, amount_sell: float, rate: float, from_ccy: str, to_ccy: str) -> float:
        return invert(amount_sell, rate, from_ccy, to_ccy, self.rates.get(from_ccy), self.rates.get(to_ccy))
