"""
Order API tests.

Every call goes through the HTTP surface with the X-User-Id header; state
is checked with follow-up GETs.
"""

import pytest
from backend.app.core.exceptions import InvalidStateError

API = "/v1"


@pytest.fixture
def order_payload(seed):
    return {
        "customer_id": 1,
        "from_currency": "USD",
        "to_currency": "EUR",
        "amount_buy": 100.0,
        "amount_sell": 90.0,
        "rate": 0.9,
        "buy_account_id": seed.accounts["USD Cash"].id,
        "sell_account_id": seed.accounts["EUR Bank"].id,
    }


async def create_order(client, headers, payload):
    response = await client.post(f"{API}/orders", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_actor_header_required(client, seed):
    response = await client.get(f"{API}/orders")
    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_AUTH"

    for value in ("abc", "9999"):
        response = await client.get(f"{API}/orders", headers={"X-User-Id": value})
        assert response.status_code == 401


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_create_and_read_order(client, headers, seed, order_payload):
    order = await create_order(client, headers["staff"], order_payload)

    assert order["status"] == "pending"
    assert order["created_by"] == seed.users["staff"].id
    assert order["direct_postings_applied"] is False

    response = await client.get(f"{API}/orders/{order['id']}", headers=headers["viewer"])
    assert response.status_code == 200
    details = response.json()
    assert details["order"]["id"] == order["id"]
    assert details["receipts"] == []
    assert details["receipt_balance"] == pytest.approx(100.0)
    assert details["payment_balance"] == pytest.approx(90.0)

    response = await client.get(f"{API}/orders", params={"status": "pending"}, headers=headers["viewer"])
    assert response.json()["count"] == 1

    response = await client.get(f"{API}/orders/9999", headers=headers["viewer"])
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND"


@pytest.mark.asyncio
async def test_request_validation_errors(client, headers, order_payload):
    payload = dict(order_payload, amount_buy=-1)
    response = await client.post(f"{API}/orders", json=payload, headers=headers["staff"])
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"

    payload = dict(order_payload, to_currency="USD", sell_account_id=None)
    response = await client.post(f"{API}/orders", json=payload, headers=headers["staff"])
    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_INVALID_ARGUMENT"

    payload = dict(order_payload, status="completed")
    response = await client.post(f"{API}/orders", json=payload, headers=headers["staff"])
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_receipt_confirm_flow(client, headers, seed, order_payload):
    usd = seed.accounts["USD Cash"]
    order = await create_order(client, headers["staff"], order_payload)

    response = await client.post(
        f"{API}/orders/{order['id']}/receipts",
        json={"amount": 60.0, "image_path": "/api/uploads/orders/r.png"},
        headers=headers["staff"],
    )
    assert response.status_code == 201
    receipt = response.json()
    assert receipt["status"] == "draft"
    assert receipt["account_id"] == usd.id
    assert receipt["image_path"] == "orders/r.png"

    response = await client.put(f"{API}/receipts/{receipt['id']}", json={"amount": 65.0}, headers=headers["staff"])
    assert response.json()["amount"] == 65.0

    response = await client.post(f"{API}/receipts/{receipt['id']}/confirm", headers=headers["staff"])
    assert response.status_code == 200
    assert response.json() == {"success": True, "row_id": receipt["id"], "status": "confirmed", "flex_excess": None}

    response = await client.post(f"{API}/receipts/{receipt['id']}/confirm", headers=headers["staff"])
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_INVALID_STATE"

    response = await client.delete(f"{API}/receipts/{receipt['id']}", headers=headers["staff"])
    assert response.status_code == 409

    details = (await client.get(f"{API}/orders/{order['id']}", headers=headers["staff"])).json()
    assert details["total_receipt_amount"] == pytest.approx(65.0)
    assert details["receipt_balance"] == pytest.approx(35.0)

    ledger = (await client.get(f"{API}/accounts/{usd.id}/transactions", headers=headers["viewer"])).json()
    assert ledger["balance"] == pytest.approx(65.0)
    assert ledger["transaction_total"] == pytest.approx(ledger["balance"])
    assert [t["description"] for t in ledger["transactions"]] == [f"Order #{order['id']} - Receipt from customer"]


@pytest.mark.asyncio
async def test_confirm_without_account_is_rejected(client, headers, order_payload):
    payload = dict(order_payload, buy_account_id=None)
    order = await create_order(client, headers["staff"], payload)
    receipt = (await client.post(
        f"{API}/orders/{order['id']}/receipts", json={"amount": 10.0}, headers=headers["staff"]
    )).json()

    response = await client.post(f"{API}/receipts/{receipt['id']}/confirm", headers=headers["staff"])

    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_MISSING_ACCOUNT"


@pytest.mark.asyncio
async def test_status_and_delete(client, headers, seed, order_payload):
    order = await create_order(client, headers["staff"], order_payload)
    url = f"{API}/orders/{order['id']}"

    response = await client.patch(f"{url}/status", json={"status": "completed"}, headers=headers["staff"])
    assert response.status_code == 403

    response = await client.patch(f"{url}/status", json={"status": "under_process"}, headers=headers["staff"])
    assert response.json()["status"] == "under_process"
    response = await client.patch(f"{url}/status", json={"status": "completed"}, headers=headers["staff"])
    assert response.json()["status"] == "completed"
    assert response.json()["direct_postings_applied"] is True

    response = await client.put(url, json={"remarks": "late"}, headers=headers["staff"])
    assert response.status_code == 409

    response = await client.delete(url, headers=headers["staff"])
    assert response.status_code == 403

    response = await client.delete(url, headers=headers["admin"])
    assert response.status_code == 200
    assert (await client.get(url, headers=headers["admin"])).status_code == 404

    for name in ("USD Cash", "EUR Bank"):
        account = (await client.get(f"{API}/accounts/{seed.accounts[name].id}", headers=headers["viewer"])).json()
        assert account["balance"] == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_flex_endpoints(client, headers, seed, order_payload):
    payload = dict(
        order_payload,
        to_currency="AED",
        amount_sell=200.0,
        rate=2.0,
        is_flex_order=True,
        sell_account_id=seed.accounts["AED Cash"].id,
    )
    order = await create_order(client, headers["staff"], payload)
    url = f"{API}/orders/{order['id']}"

    receipt = (await client.post(f"{url}/receipts", json={"amount": 60.0}, headers=headers["staff"])).json()
    await client.post(f"{API}/receipts/{receipt['id']}/confirm", headers=headers["staff"])
    payment = (await client.post(f"{url}/payments", json={"amount": 150.0}, headers=headers["staff"])).json()

    response = await client.post(f"{API}/payments/{payment['id']}/confirm", headers=headers["staff"])
    excess = response.json()["flex_excess"]
    assert excess["excess_amount"] == pytest.approx(30.0)
    assert excess["additional_receipts_needed"] == pytest.approx(15.0)

    response = await client.post(f"{url}/adjust-flex-rate", json={"rate": 2.5}, headers=headers["staff"])
    assert response.json()["actual_rate"] == pytest.approx(2.5)
    assert response.json()["actual_amount_sell"] == pytest.approx(187.5)

    response = await client.post(f"{url}/proceed-with-partial-receipts", headers=headers["staff"])
    assert response.json()["status"] == "under_process"
    assert response.json()["actual_amount_buy"] == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_margin_rows_and_audit(client, headers, seed, order_payload):
    bank = seed.accounts["USD Bank"]
    payload = dict(order_payload, profit_amount=4.0, profit_account_id=bank.id)
    order = await create_order(client, headers["staff"], payload)

    details = (await client.get(f"{API}/orders/{order['id']}", headers=headers["staff"])).json()
    profit = details["profits"][0]
    assert profit["status"] == "draft"
    assert profit["currency_code"] == "USD"

    response = await client.put(f"{API}/profits/{profit['id']}", json={"amount": 6.0}, headers=headers["staff"])
    assert response.json()["amount"] == 6.0
    response = await client.post(f"{API}/profits/{profit['id']}/confirm", headers=headers["staff"])
    assert response.json()["status"] == "confirmed"

    account = (await client.get(f"{API}/accounts/{bank.id}", headers=headers["staff"])).json()
    assert account["balance"] == pytest.approx(6.0)

    audit = (await client.get(f"{API}/orders/{order['id']}/audit", headers=headers["staff"])).json()
    assert [entry["action"] for entry in audit] == ["ORDER_CREATED"]


@pytest.mark.asyncio
async def test_failed_confirm_leaves_nothing_behind(client, headers, seed, order_payload, mocker):
    order = await create_order(client, headers["staff"], {**order_payload, "is_flex_order": True})
    url = f"{API}/orders/{order['id']}"
    receipt = (await client.post(f"{url}/receipts", json={"amount": 40.0}, headers=headers["staff"])).json()

    # Fails after the posting, the status flip and the flex recompute
    audit = mocker.patch(
        "backend.app.domain.orders.sub_ledger.log_event",
        side_effect=InvalidStateError("Audit trail unavailable"),
    )
    response = await client.post(f"{API}/receipts/{receipt['id']}/confirm", headers=headers["staff"])
    assert response.status_code == 409
    audit.assert_called_once()

    usd = seed.accounts["USD Cash"].id
    ledger = (await client.get(f"{API}/accounts/{usd}/transactions", headers=headers["viewer"])).json()
    assert ledger["balance"] == pytest.approx(0.0)
    assert ledger["transactions"] == []

    details = (await client.get(url, headers=headers["staff"])).json()
    assert [r["status"] for r in details["receipts"]] == ["draft"]
    assert details["order"]["actual_amount_buy"] is None

    mocker.stopall()
    response = await client.post(f"{API}/receipts/{receipt['id']}/confirm", headers=headers["staff"])
    assert response.status_code == 200
