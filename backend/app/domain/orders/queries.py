"""
Order read model: an order with its sub-ledger rows, totals and outstanding balances.
"""

from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.domain.ledger.rate_inference import RateInferenceEngine
from backend.app.domain.orders.access import load_order
from backend.app.domain.orders.flex_reconciler import FlexOrderReconciler, confirmed_sum
from backend.app.domain.orders.sub_ledger import OrderSubLedger, SubLedgerKind
from backend.app.models.order import Order
from backend.app.models.order_ledger import OrderPayment, OrderReceipt


async def order_balances(db: AsyncSession, order: Order, engine: Optional[RateInferenceEngine] = None) -> Dict[str, float]:
    """
    Confirmed totals and what is still outstanding on each leg.

    Flex orders owe payments against the receipts actually confirmed, so
    an overpayment shows up as a negative payment balance.
    """
    total_receipts = await confirmed_sum(db, OrderReceipt, order.id)
    total_payments = await confirmed_sum(db, OrderPayment, order.id)

    if not order.is_flex_order:
        return {
            "total_receipt_amount": total_receipts,
            "total_payment_amount": total_payments,
            "receipt_balance": order.amount_buy - total_receipts,
            "payment_balance": order.amount_sell - total_payments,
        }

    if engine is None:
        engine = await RateInferenceEngine.load(db, [order.from_currency, order.to_currency])
    expected_receipts = order.actual_amount_buy or order.amount_buy
    expected_payments = FlexOrderReconciler.expected_payment(order, total_receipts, engine)
    return {
        "total_receipt_amount": total_receipts,
        "total_payment_amount": total_payments,
        "receipt_balance": expected_receipts - total_receipts,
        "payment_balance": expected_payments - total_payments,
    }


async def get_order_details(db: AsyncSession, order_id: int) -> Dict[str, Any]:
    order = await load_order(db, order_id)
    details = {
        "order": order,
        "receipts": await OrderSubLedger.list_rows(db, SubLedgerKind.RECEIPT, order.id),
        "payments": await OrderSubLedger.list_rows(db, SubLedgerKind.PAYMENT, order.id),
        "profits": await OrderSubLedger.list_rows(db, SubLedgerKind.PROFIT, order.id),
        "service_charges": await OrderSubLedger.list_rows(db, SubLedgerKind.SERVICE_CHARGE, order.id),
    }
    details.update(await order_balances(db, order))
    return details
