"""
Order sub-ledger tests.

Drafts never touch balances; confirming posts exactly one transaction and
can happen only once.
"""

import pytest
from sqlalchemy import func, select
from backend.app.core.exceptions import (
    InsufficientPermissionsError,
    InvalidArgumentError,
    InvalidStateError,
    MissingAccountError,
)
from backend.app.domain.orders.lifecycle import OrderLifecycle
from backend.app.domain.orders.sub_ledger import OrderSubLedger, SubLedgerKind
from backend.app.models.account import AccountTransaction
from backend.app.models.enums import OrderStatus, SubLedgerStatus, TransactionType


async def transaction_count(db) -> int:
    result = await db.execute(select(func.count(AccountTransaction.id)))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_draft_has_no_balance_effect(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())

    row = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 40.0, seed.accounts["USD Cash"].id
    )

    assert row.status == SubLedgerStatus.DRAFT
    assert await transaction_count(db_session) == 0
    assert seed.accounts["USD Cash"].balance == 0.0


@pytest.mark.asyncio
async def test_confirm_posts_once(db_session, seed, actors, order_data):
    usd = seed.accounts["USD Cash"]
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    row = await OrderSubLedger.create_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 40.0, usd.id)

    confirmed, excess = await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id)

    assert confirmed.status == SubLedgerStatus.CONFIRMED
    assert excess is None
    assert usd.balance == pytest.approx(40.0)
    assert await transaction_count(db_session) == 1

    tx = (await db_session.execute(select(AccountTransaction))).scalar_one()
    assert tx.type == TransactionType.ADD
    assert tx.description == f"Order #{order.id} - Receipt from customer"

    with pytest.raises(InvalidStateError):
        await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id)
    assert await transaction_count(db_session) == 1
    assert usd.balance == pytest.approx(40.0)


@pytest.mark.asyncio
async def test_payment_withdraws_from_sell_account(db_session, seed, actors, order_data):
    eur = seed.accounts["EUR Bank"]
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    row = await OrderSubLedger.create_draft(db_session, actors.staff, SubLedgerKind.PAYMENT, order.id, 90.0, eur.id)

    await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.PAYMENT, row.id)

    assert eur.balance == pytest.approx(-90.0)


@pytest.mark.asyncio
async def test_confirm_without_account(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(
        db_session, actors.staff, order_data(buy_account_id=None, sell_account_id=None)
    )
    row = await OrderSubLedger.create_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 10.0)

    with pytest.raises(MissingAccountError):
        await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id)
    assert row.status == SubLedgerStatus.DRAFT
    assert await transaction_count(db_session) == 0


@pytest.mark.asyncio
async def test_account_currency_must_match_leg(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())

    with pytest.raises(InvalidArgumentError):
        await OrderSubLedger.create_draft(
            db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 10.0, seed.accounts["EUR Bank"].id
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -10])
async def test_receipt_amount_must_be_positive(db_session, seed, actors, order_data, amount):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())

    with pytest.raises(InvalidArgumentError):
        await OrderSubLedger.create_draft(
            db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, amount, seed.accounts["USD Cash"].id
        )


@pytest.mark.asyncio
async def test_update_and_delete_only_drafts(db_session, seed, actors, order_data):
    usd = seed.accounts["USD Cash"]
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    row = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 10.0, usd.id, image_path="orders/a.png"
    )

    updated, replaced = await OrderSubLedger.update_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, row.id, {"amount": 12.5, "image_path": "orders/b.png"}
    )
    assert updated.amount == 12.5
    assert replaced == "orders/a.png"

    with pytest.raises(InvalidArgumentError):
        await OrderSubLedger.update_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id, {"status": "confirmed"})

    await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id)

    with pytest.raises(InvalidStateError):
        await OrderSubLedger.update_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id, {"amount": 1.0})
    with pytest.raises(InvalidStateError):
        await OrderSubLedger.delete_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, row.id)

    draft = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 5.0, usd.id, image_path="orders/c.png"
    )
    assert await OrderSubLedger.delete_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, draft.id) == "orders/c.png"
    assert len(await OrderSubLedger.list_rows(db_session, SubLedgerKind.RECEIPT, order.id)) == 1


@pytest.mark.asyncio
async def test_shared_image_is_not_released(db_session, seed, actors, order_data):
    usd = seed.accounts["USD Cash"]
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    kept = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 10.0, usd.id, image_path="orders/shared.png"
    )
    copy = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 5.0, usd.id, image_path="orders/shared.png"
    )

    assert await OrderSubLedger.delete_draft(db_session, actors.staff, SubLedgerKind.RECEIPT, copy.id) is None
    _, replaced = await OrderSubLedger.update_draft(
        db_session, actors.staff, SubLedgerKind.RECEIPT, kept.id, {"image_path": "orders/own.png"}
    )
    assert replaced == "orders/shared.png"


@pytest.mark.asyncio
async def test_negative_service_charge_is_paid_by_us(db_session, seed, actors, order_data):
    usd = seed.accounts["USD Bank"]
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    row = await OrderSubLedger.create_draft(
        db_session, actors.staff, SubLedgerKind.SERVICE_CHARGE, order.id, -7.5, usd.id, currency_code="USD"
    )

    await OrderSubLedger.confirm(db_session, actors.staff, SubLedgerKind.SERVICE_CHARGE, row.id)

    tx = (await db_session.execute(select(AccountTransaction))).scalar_one()
    assert tx.type == TransactionType.WITHDRAW
    assert tx.amount == pytest.approx(7.5)
    assert tx.description == f"Order #{order.id} - Service charge paid by us"
    assert usd.balance == pytest.approx(-7.5)


@pytest.mark.asyncio
async def test_only_creator_handler_or_admin(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.admin, order_data())

    with pytest.raises(InsufficientPermissionsError):
        await OrderSubLedger.create_draft(
            db_session, actors.viewer, SubLedgerKind.RECEIPT, order.id, 10.0, seed.accounts["USD Cash"].id
        )

    order.handler_id = seed.users["viewer"].id
    await db_session.flush()
    row = await OrderSubLedger.create_draft(
        db_session, actors.viewer, SubLedgerKind.RECEIPT, order.id, 10.0, seed.accounts["USD Cash"].id
    )
    assert row.id is not None


@pytest.mark.asyncio
async def test_completed_order_rows_frozen_for_non_admin(db_session, seed, actors, order_data):
    order = await OrderLifecycle.create_order(db_session, actors.staff, order_data())
    await OrderLifecycle.change_status(db_session, actors.admin, order.id, OrderStatus.COMPLETED)

    with pytest.raises(InvalidStateError):
        await OrderSubLedger.create_draft(
            db_session, actors.staff, SubLedgerKind.RECEIPT, order.id, 10.0, seed.accounts["USD Cash"].id
        )
