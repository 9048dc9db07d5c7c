"""
Order lifecycle tests: transitions, per-status edit policy, the completion
cascade and delete reversal.
"""

import pytest
from sqlalchemy import func, select
from backend.app.core.exceptions import (
    InsufficientPermissionsError,
    InvalidArgumentError,
    InvalidStateError,
    ResourceNotFoundError,
)
from backend.app.domain.ledger.account_ledger import AccountLedger
from backend.app.domain.orders.lifecycle import OrderLifecycle
from backend.app.domain.orders.sub_ledger import OrderSubLedger, SubLedgerKind
from backend.app.models.account import AccountTransaction
from backend.app.models.enums import OrderStatus, SubLedgerStatus
from backend.app.models.order import Order


async def transaction_count(db) -> int:
    result = await db.execute(select(func.count(AccountTransaction.id)))
    return result.scalar_one()


async def descriptions(db, account_id):
    result = await db.execute(
        select(AccountTransaction.description)
        .where(AccountTransaction.account_id == account_id)
        .order_by(AccountTransaction.id)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_admin_creates_completed_order(db_session, seed, actors, order_data):
    usd, eur = seed.accounts["USD Cash"], seed.accounts["EUR Bank"]

    order = await OrderLifecycle.create_order(db_session, actors.admin, order_data(status="completed"))

    assert order.status == OrderStatus.COMPLETED
    assert order.direct_postings_applied is True
    assert usd.balance == pytest.approx(100.0)
    assert eur.balance == pytest.approx(-90.0)
    assert await descriptions(db_session, usd.id) == [f"Order #{order.id} - Receipt from customer"]
    assert await descriptions(db_session, eur.id) == [f"Order #{order.id} - Payment to customer"]
    assert await AccountLedger.transaction_total(db_session, usd.id) == pytest.approx(usd.balance)


@pytest.mark.asyncio
async def test_only_admin_creates_non_pending(db_session, actors, order_data):
    with pytest.raises(InsufficientPermissionsError):
        await OrderLifecycle.create_order(db_session, actors.staff, order_data(status="completed"))

    with pytest.raises(InvalidArgumentError):
        await OrderLifecycle.create_order(db_session, actors.admin, order_data(status="pending_amend"))


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"to_currency": "USD", "sell_account_id": None},
    {"amount_buy": 0},
    {"amount_sell": -5},
    {"rate": 0},
])
async def test_invalid_trade_rejected(db_session, actors, order_data, overrides):
    with pytest.raises(InvalidArgumentError):
        await OrderLifecycle.create_order(db_session, actors.staff, order_data(**overrides))


@pytest.mark.asyncio
async def test_account_currency_checked_on_create(db_session, seed, actors, order_data):
    with pytest.raises(InvalidArgumentError):
        await OrderLifecycle.create_order(
            db_session, actors.staff, order_data(buy_account_id=seed.accounts["EUR Bank"].id)
        )

    with pytest.raises(ResourceNotFoundError):
        await OrderLifecycle.create_order(db_session, actors.staff, order_data(sell_account_id=9999))


@pytest.mark.asyncio
async def test_status_transitions(db_session, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())

    with pytest.raises(InsufficientPermissionsError):
        await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.COMPLETED)
    with pytest.raises(InvalidArgumentError):
        await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.PENDING_DELETE)

    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.UNDER_PROCESS)
    with pytest.raises(InvalidStateError):
        await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.PENDING)

    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.COMPLETED)
    assert order.status == OrderStatus.COMPLETED

    # Completed orders only leave completed through the approval workflow
    with pytest.raises(InvalidStateError):
        await OrderLifecycle.change_status(db_session, actors.admin, order.id, OrderStatus.CANCELLED)


@pytest.mark.asyncio
async def test_cancelled_is_terminal(db_session, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.CANCELLED)

    with pytest.raises(InvalidStateError):
        await OrderLifecycle.change_status(db_session, actors.admin, order.id, OrderStatus.COMPLETED)

    order = await OrderLifecycle.update_order(db_session, actors.staff, order.id, {"remarks": "customer left"})
    assert order.remarks == "customer left"


@pytest.mark.asyncio
async def test_non_owner_cannot_change_status(db_session, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())

    with pytest.raises(InsufficientPermissionsError):
        await OrderLifecycle.change_status(db_session, actors.viewer, order.id, OrderStatus.UNDER_PROCESS)


@pytest.mark.asyncio
async def test_completion_with_confirmed_rows_skips_direct_postings(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    for kind, amount, account in (
        (SubLedgerKind.RECEIPT, 100.0, seed.accounts["USD Cash"]),
        (SubLedgerKind.PAYMENT, 90.0, seed.accounts["EUR Bank"]),
    ):
        row = await OrderSubLedger.create_draft(db_session, actors.staff, kind, order.id, amount, account.id)
        await OrderSubLedger.confirm(db_session, actors.staff, kind, row.id)

    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.UNDER_PROCESS)
    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.COMPLETED)

    assert order.direct_postings_applied is False
    assert await transaction_count(db_session) == 2
    assert seed.accounts["USD Cash"].balance == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_otc_completion_posts_nothing(db_session, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.admin, order_data(order_type="otc", status="completed"))

    assert order.status == OrderStatus.COMPLETED
    assert await transaction_count(db_session) == 0


@pytest.mark.asyncio
async def test_completion_confirms_margin_drafts(db_session, seed, actors, order_data):
    bank = seed.accounts["USD Bank"]
    order = await OrderLifecycle.create_order(
        db_session,
        actors.staff,
        order_data(
            profit_amount=5.0,
            profit_account_id=bank.id,
            service_charge_amount=-2.0,
            service_charge_account_id=bank.id,
        ),
    )
    drafts = await OrderSubLedger.list_rows(db_session, SubLedgerKind.PROFIT, order.id, SubLedgerStatus.DRAFT)
    assert len(drafts) == 1
    assert drafts[0].currency_code == "USD"
    assert bank.balance == 0.0

    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.UNDER_PROCESS)
    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.COMPLETED)

    assert await OrderSubLedger.list_rows(db_session, SubLedgerKind.PROFIT, order.id, SubLedgerStatus.DRAFT) == []
    assert bank.balance == pytest.approx(3.0)
    assert await descriptions(db_session, bank.id) == [
        f"Order #{order.id} - Profit",
        f"Order #{order.id} - Service charge paid by us",
    ]


@pytest.mark.asyncio
async def test_edit_policy_per_status(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())

    order = await OrderLifecycle.update_order(db_session, actors.staff, order.id, {"amount_buy": 110.0, "amount_sell": 99.0})
    assert order.amount_buy == 110.0

    with pytest.raises(InvalidArgumentError):
        await OrderLifecycle.update_order(db_session, actors.staff, order.id, {"status": "completed"})

    await OrderLifecycle.change_status(db_session, actors.staff, order.id, OrderStatus.UNDER_PROCESS)
    with pytest.raises(InvalidStateError):
        await OrderLifecycle.update_order(db_session, actors.staff, order.id, {"rate": 0.95})
    order = await OrderLifecycle.update_order(db_session, actors.staff, order.id, {"remarks": "wire sent"})
    assert order.remarks == "wire sent"


@pytest.mark.asyncio
async def test_completed_order_admin_edits(db_session, seed, actors, order_data):
    bank = seed.accounts["USD Bank"]
    order = await OrderLifecycle.create_order(
        db_session,
        actors.admin,
        order_data(status="completed", handler_id=seed.users["staff"].id, profit_amount=5.0, profit_account_id=bank.id),
    )
    assert bank.balance == pytest.approx(5.0)

    with pytest.raises(InvalidStateError):
        await OrderLifecycle.update_order(db_session, actors.staff, order.id, {"remarks": "late note"})
    with pytest.raises(InvalidStateError):
        await OrderLifecycle.update_order(db_session, actors.admin, order.id, {"buy_account_id": seed.accounts["USD Bank"].id})

    await OrderLifecycle.update_order(db_session, actors.admin, order.id, {"profit_amount": 8.0})

    confirmed = await OrderSubLedger.list_rows(db_session, SubLedgerKind.PROFIT, order.id, SubLedgerStatus.CONFIRMED)
    assert [row.amount for row in confirmed] == [8.0]
    assert bank.balance == pytest.approx(8.0)
    assert await descriptions(db_session, bank.id) == [
        f"Order #{order.id} - Profit",
        f"Order #{order.id} - Reversal of profit (Order amended)",
        f"Order #{order.id} - Profit (Amended)",
    ]


@pytest.mark.asyncio
async def test_delete_reverses_direct_postings(db_session, seed, actors, order_data):
    usd, eur = seed.accounts["USD Cash"], seed.accounts["EUR Bank"]
    order = await OrderLifecycle.create_order(db_session, actors.admin, order_data(status="completed"))
    order_id = order.id

    with pytest.raises(InsufficientPermissionsError):
        await OrderLifecycle.delete_order(db_session, actors.staff, order_id)

    await OrderLifecycle.delete_order(db_session, actors.admin, order_id)

    assert await db_session.get(Order, order_id) is None
    assert usd.balance == pytest.approx(0.0)
    assert eur.balance == pytest.approx(0.0)
    assert await transaction_count(db_session) == 4
    assert await descriptions(db_session, usd.id) == [
        f"Order #{order_id} - Receipt from customer",
        f"Order #{order_id} - Reversal of receipt from customer (Order deleted)",
    ]


@pytest.mark.asyncio
async def test_documents_supersede_direct_postings(db_session, seed, actors, order_data):
    usd, eur = seed.accounts["USD Cash"], seed.accounts["EUR Bank"]
    order = await OrderLifecycle.create_order(db_session, actors.admin, order_data(status="completed"))
    assert (usd.balance, eur.balance) == (pytest.approx(100.0), pytest.approx(-90.0))

    receipt = await OrderSubLedger.create_draft(db_session, actors.admin, SubLedgerKind.RECEIPT, order.id, 100.0, usd.id)
    await OrderSubLedger.confirm(db_session, actors.admin, SubLedgerKind.RECEIPT, receipt.id)

    # Receipt counted once; the direct payment is backed out until a payment row arrives
    assert order.direct_postings_applied is False
    assert usd.balance == pytest.approx(100.0)
    assert eur.balance == pytest.approx(0.0)
    assert await descriptions(db_session, usd.id) == [
        f"Order #{order.id} - Receipt from customer",
        f"Order #{order.id} - Reversal of receipt from customer (Superseded by confirmed receipt)",
        f"Order #{order.id} - Receipt from customer",
    ]

    payment = await OrderSubLedger.create_draft(db_session, actors.admin, SubLedgerKind.PAYMENT, order.id, 90.0, eur.id)
    await OrderSubLedger.confirm(db_session, actors.admin, SubLedgerKind.PAYMENT, payment.id)

    assert eur.balance == pytest.approx(-90.0)
    assert await transaction_count(db_session) == 5
    for account in (usd, eur):
        assert await AccountLedger.transaction_total(db_session, account.id) == pytest.approx(account.balance)

    await OrderLifecycle.delete_order(db_session, actors.admin, order.id)
    assert (usd.balance, eur.balance) == (pytest.approx(0.0), pytest.approx(0.0))


@pytest.mark.asyncio
async def test_delete_reverses_confirmed_rows_and_returns_images(db_session, seed, actors, order_data):
    usd = seed.accounts["USD Cash"]
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    row = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 40.0, usd.id, image_path="orders/r1.png"
    )
    await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id)
    await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 10.0, usd.id, image_path="orders/r2.png"
    )

    files = await OrderLifecycle.delete_order(db_session, actors.admin, order.id)

    assert sorted(files) == ["orders/r1.png", "orders/r2.png"]
    assert usd.balance == pytest.approx(0.0)
    assert await AccountLedger.transaction_total(db_session, usd.id) == pytest.approx(0.0)
