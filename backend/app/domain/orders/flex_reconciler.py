"""
Flex Order Reconciler (Domain Logic).

A flex order's filled amount is not fixed at creation. Confirmed receipts
and payments recompute the order's actual_* columns; the status is never
advanced here except by an explicit proceed-with-partial-receipts call.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InvalidArgumentError, InvalidStateError
from backend.app.core.permissions import Actor
from backend.app.domain.ledger.rate_inference import RateInferenceEngine
from backend.app.domain.orders.access import ensure_order_mutable, load_order
from backend.app.models.enums import OrderStatus, SubLedgerStatus
from backend.app.models.order import Order
from backend.app.models.order_ledger import OrderPayment, OrderReceipt
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

# Payments within this margin of the expected amount are not an excess
EXCESS_TOLERANCE = 1e-9


@dataclass(frozen=True)
class FlexExcess:
    excess_amount: float
    additional_receipts_needed: float
    effective_rate: float


async def confirmed_sum(db: AsyncSession, model, order_id: int) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(model.amount), 0.0)).where(
            model.order_id == order_id,
            model.status == SubLedgerStatus.CONFIRMED,
        )
    )
    return float(result.scalar_one())


async def _engine_for(db: AsyncSession, order: Order, engine: Optional[RateInferenceEngine]) -> RateInferenceEngine:
    if engine is not None:
        return engine
    return await RateInferenceEngine.load(db, [order.from_currency, order.to_currency])


def _ensure_flex(order: Order) -> None:
    if not order.is_flex_order:
        raise InvalidArgumentError(
            "This operation is only for flex orders",
            details={"order_id": order.id},
        )


class FlexOrderReconciler:

    @staticmethod
    async def on_receipt_confirmed(
        db: AsyncSession,
        order: Order,
        engine: Optional[RateInferenceEngine] = None
    ) -> Order:
        """actual_amount_buy = confirmed receipts; actual_amount_sell follows via convert."""
        engine = await _engine_for(db, order, engine)
        total_receipts = await confirmed_sum(db, OrderReceipt, order.id)
        effective_rate = order.effective_rate

        order.actual_amount_buy = total_receipts
        order.actual_amount_sell = engine.convert(
            total_receipts, effective_rate, order.from_currency, order.to_currency
        )
        order.actual_rate = effective_rate
        await db.flush()
        return order

    @staticmethod
    async def on_payment_confirmed(
        db: AsyncSession,
        order: Order,
        engine: Optional[RateInferenceEngine] = None
    ) -> Optional[FlexExcess]:
        """
        Detect overpayment against the expected fill.

        Flow:
        1. expected = actual_amount_sell, else actual_amount_buy * rate, else amount_sell
        2. If confirmed payments exceed it, the customer owes more: convert the
           excess back to the from-leg and raise actual_amount_buy by it
        3. actual_amount_sell becomes the total paid

        Returns:
            FlexExcess when payments exceed the expected amount, else None
        """
        total_payments = await confirmed_sum(db, OrderPayment, order.id)
        effective_rate = order.effective_rate

        if order.actual_amount_sell is not None:
            expected = order.actual_amount_sell
        elif order.actual_amount_buy is not None:
            expected = order.actual_amount_buy * effective_rate
        else:
            expected = order.amount_sell

        if total_payments - expected <= EXCESS_TOLERANCE:
            return None

        engine = await _engine_for(db, order, engine)
        excess = total_payments - expected
        additional = engine.invert(excess, effective_rate, order.from_currency, order.to_currency)

        if order.actual_amount_buy is not None:
            current_buy = order.actual_amount_buy
        else:
            current_buy = await confirmed_sum(db, OrderReceipt, order.id)

        order.actual_amount_buy = current_buy + additional
        order.actual_amount_sell = total_payments
        order.actual_rate = effective_rate
        await db.flush()

        logger.info(
            "Flex order %s overpaid by %.6f, %.6f more %s receipts needed",
            order.id, excess, additional, order.from_currency
        )
        return FlexExcess(
            excess_amount=excess,
            additional_receipts_needed=additional,
            effective_rate=effective_rate,
        )

    @staticmethod
    async def proceed_with_partial_receipts(db: AsyncSession, actor: Actor, order_id: int) -> Order:
        """Accept what the customer has paid so far as the final fill."""
        order = await load_order(db, order_id)
        _ensure_flex(order)
        await ensure_order_mutable(db, actor, order)
        if order.status not in (OrderStatus.PENDING, OrderStatus.UNDER_PROCESS):
            raise InvalidStateError(
                f"Cannot proceed with partial receipts on a {order.status.value} order",
                details={"order_id": order.id},
            )

        total_receipts = await confirmed_sum(db, OrderReceipt, order.id)
        if total_receipts <= 0:
            raise InvalidArgumentError("No confirmed receipts found for this order", details={"order_id": order.id})

        engine = await _engine_for(db, order, None)
        effective_rate = order.effective_rate
        previous_status = order.status

        order.actual_amount_buy = total_receipts
        order.actual_amount_sell = engine.convert(
            total_receipts, effective_rate, order.from_currency, order.to_currency
        )
        order.actual_rate = effective_rate
        order.status = OrderStatus.UNDER_PROCESS
        await db.flush()

        await log_event(
            db,
            AuditAction.FLEX_PARTIAL_ACCEPTED,
            actor_id=actor.user_id,
            entity_type="order",
            entity_id=order.id,
            metadata={
                "actual_amount_buy": order.actual_amount_buy,
                "previous_status": previous_status.value,
            },
        )
        return order

    @staticmethod
    async def adjust_rate(db: AsyncSession, actor: Actor, order_id: int, new_rate: float) -> Order:
        """Set actual_rate and recompute actual_amount_sell; status untouched."""
        if new_rate is None or new_rate <= 0:
            raise InvalidArgumentError("Valid exchange rate is required", details={"rate": new_rate})

        order = await load_order(db, order_id)
        _ensure_flex(order)
        await ensure_order_mutable(db, actor, order)

        engine = await _engine_for(db, order, None)
        base_amount = order.actual_amount_buy if order.actual_amount_buy is not None else order.amount_buy
        old_rate = order.effective_rate

        order.actual_rate = new_rate
        order.actual_amount_sell = engine.convert(base_amount, new_rate, order.from_currency, order.to_currency)
        await db.flush()

        await log_event(
            db,
            AuditAction.FLEX_RATE_ADJUSTED,
            actor_id=actor.user_id,
            entity_type="order",
            entity_id=order.id,
            metadata={"old_rate": old_rate, "new_rate": new_rate},
        )
        return order

    @staticmethod
    def expected_payment(order: Order, total_receipts: float, engine: RateInferenceEngine) -> float:
        """What we owe the customer given what they have actually paid."""
        if not order.is_flex_order:
            return order.amount_sell
        if total_receipts > 0:
            return engine.convert(total_receipts, order.effective_rate, order.from_currency, order.to_currency)
        if order.actual_amount_sell is not None:
            return order.actual_amount_sell
        return order.amount_sell
