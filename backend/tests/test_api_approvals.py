"""
Approval, upload, expense and notification API tests.
"""

import pytest
from backend.app.core.exceptions import InvalidStateError

API = "/v1"
PNG = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
async def completed_order(client, headers, seed):
    """Staff order paid out through one confirmed receipt and payment, then completed."""
    order = (await client.post(f"{API}/orders", json={
        "customer_id": 1,
        "from_currency": "USD",
        "to_currency": "EUR",
        "amount_buy": 100.0,
        "amount_sell": 90.0,
        "rate": 0.9,
        "buy_account_id": seed.accounts["USD Cash"].id,
        "sell_account_id": seed.accounts["EUR Bank"].id,
    }, headers=headers["staff"])).json()
    url = f"{API}/orders/{order['id']}"

    for kind, amount in (("receipts", 100.0), ("payments", 90.0)):
        row = (await client.post(f"{url}/{kind}", json={"amount": amount}, headers=headers["staff"])).json()
        await client.post(f"{API}/{kind}/{row['id']}/confirm", headers=headers["staff"])
    await client.patch(f"{url}/status", json={"status": "under_process"}, headers=headers["staff"])
    response = await client.patch(f"{url}/status", json={"status": "completed"}, headers=headers["staff"])
    assert response.json()["status"] == "completed"
    return response.json()


async def upload(client, headers, entity_id, kind="payment"):
    response = await client.post(
        f"{API}/uploads",
        json={"content": PNG, "category": "order", "entity_id": entity_id, "kind": kind},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_upload_stores_file(client, headers, storage):
    body = await upload(client, headers["staff"], 12)

    assert body["path"].startswith("orders/order_12_payment_")
    assert body["path"].endswith(".png")
    assert body["url"] == f"/api/uploads/{body['path']}"
    assert (storage.root / body["path"]).read_bytes() == b"\x89PNG\r\n\x1a\n"

    response = await client.post(f"{API}/uploads", json={"content": "###"}, headers=headers["staff"])
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_edit_request_approved_over_http(client, headers, seed, connections, completed_order):
    approver_queue = connections.register(seed.users["approver"].id)
    order_id = completed_order["id"]

    response = await client.post(f"{API}/approval-requests", json={
        "entity_type": "order",
        "entity_id": order_id,
        "request_type": "edit",
        "reason": "Customer received 110",
        "request_data": {"amount_sell": 110.0},
    }, headers=headers["staff"])
    assert response.status_code == 201
    request = response.json()
    assert request["status"] == "pending"
    assert request["original_entity_data"]["amount_sell"] == 90.0

    order = (await client.get(f"{API}/orders/{order_id}", headers=headers["staff"])).json()["order"]
    assert order["status"] == "pending_amend"

    # Approvers hear about it over SSE and in their inbox
    assert approver_queue.get_nowait()["title"] == "New Approval Request"
    inbox = (await client.get(f"{API}/notifications", headers=headers["approver"])).json()
    assert inbox["unread_count"] == 1

    response = await client.post(f"{API}/approval-requests", json={
        "entity_type": "order",
        "entity_id": order_id,
        "request_type": "delete",
        "reason": "Actually delete it",
    }, headers=headers["staff"])
    assert response.status_code == 409

    response = await client.post(f"{API}/approval-requests/{request['id']}/approve", headers=headers["staff"])
    assert response.status_code == 403

    response = await client.post(f"{API}/approval-requests/{request['id']}/approve", headers=headers["approver"])
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["request"]["status"] == "approved"

    details = (await client.get(f"{API}/orders/{order_id}", headers=headers["staff"])).json()
    assert details["order"]["status"] == "completed"
    assert [p["amount"] for p in details["payments"]] == [110.0]

    ledger = (await client.get(
        f"{API}/accounts/{seed.accounts['EUR Bank'].id}/transactions", headers=headers["staff"]
    )).json()
    assert ledger["balance"] == pytest.approx(-110.0)
    assert ledger["transaction_total"] == pytest.approx(-110.0)
    assert len(ledger["transactions"]) == 3

    inbox = (await client.get(f"{API}/notifications", headers=headers["staff"])).json()
    assert inbox["notifications"][0]["title"] == "Approval Request Approved"


@pytest.mark.asyncio
async def test_rejected_request_removes_new_upload(client, headers, seed, storage, completed_order):
    order_id = completed_order["id"]
    uploaded = await upload(client, headers["staff"], order_id)

    request = (await client.post(f"{API}/approval-requests", json={
        "entity_type": "order",
        "entity_id": order_id,
        "request_type": "edit",
        "reason": "Attach proof",
        "request_data": {"payments": [{"amount": 90.0, "new_image_path": uploaded["url"]}]},
    }, headers=headers["staff"])).json()

    response = await client.post(
        f"{API}/approval-requests/{request['id']}/reject",
        json={"reason": "Wrong file"},
        headers=headers["admin"],
    )
    assert response.status_code == 200
    assert response.json()["request"]["rejection_reason"] == "Wrong file"
    assert not (storage.root / uploaded["path"]).exists()

    order = (await client.get(f"{API}/orders/{order_id}", headers=headers["staff"])).json()["order"]
    assert order["status"] == "completed"


@pytest.mark.asyncio
async def test_delete_request_and_detail(client, headers, seed, completed_order):
    order_id = completed_order["id"]
    request = (await client.post(f"{API}/approval-requests", json={
        "entity_type": "order",
        "entity_id": order_id,
        "request_type": "delete",
        "reason": "Duplicate",
    }, headers=headers["staff"])).json()

    detail = (await client.get(f"{API}/approval-requests/{request['id']}", headers=headers["approver"])).json()
    assert detail["current_entity_data"]["status"] == "pending_delete"
    assert (await client.get(f"{API}/approval-requests/{request['id']}", headers=headers["viewer"])).status_code == 403

    listing = (await client.get(f"{API}/approval-requests", headers=headers["approver"])).json()
    assert listing["total"] == 1

    await client.post(f"{API}/approval-requests/{request['id']}/approve", headers=headers["admin"])

    detail = (await client.get(f"{API}/approval-requests/{request['id']}", headers=headers["staff"])).json()
    assert detail["status"] == "approved"
    assert detail["current_entity_data"] is None
    assert (await client.get(f"{API}/orders/{order_id}", headers=headers["staff"])).status_code == 404

    listing = (await client.get(f"{API}/approval-requests", params={"status": "all"}, headers=headers["staff"])).json()
    assert listing["total"] == 1
    listing = (await client.get(f"{API}/approval-requests", headers=headers["staff"])).json()
    assert listing["total"] == 0


@pytest.mark.asyncio
async def test_expense_and_transfer_endpoints(client, headers, seed):
    cash, bank = seed.accounts["USD Cash"], seed.accounts["USD Bank"]

    response = await client.post(
        f"{API}/expenses", json={"account_id": cash.id, "amount": 25.0, "description": "Courier"}, headers=headers["staff"]
    )
    assert response.status_code == 201
    expense = response.json()
    assert (await client.get(f"{API}/expenses", headers=headers["staff"])).json()["count"] == 1

    response = await client.post(
        f"{API}/transfers", json={"from_account_id": cash.id, "to_account_id": bank.id, "amount": 50.0}, headers=headers["staff"]
    )
    assert response.status_code == 201
    response = await client.post(
        f"{API}/transfers",
        json={"from_account_id": cash.id, "to_account_id": seed.accounts["EUR Bank"].id, "amount": 5.0},
        headers=headers["staff"],
    )
    assert response.status_code == 400

    account = (await client.get(f"{API}/accounts/{cash.id}", headers=headers["staff"])).json()
    assert account["balance"] == pytest.approx(-75.0)

    request = (await client.post(f"{API}/approval-requests", json={
        "entity_type": "expense",
        "entity_id": expense["id"],
        "request_type": "delete",
        "reason": "Refunded",
    }, headers=headers["staff"])).json()
    await client.post(f"{API}/approval-requests/{request['id']}/approve", headers=headers["approver"])

    assert (await client.get(f"{API}/expenses/{expense['id']}", headers=headers["staff"])).status_code == 404
    account = (await client.get(f"{API}/accounts/{cash.id}", headers=headers["staff"])).json()
    assert account["balance"] == pytest.approx(-50.0)

    accounts = (await client.get(f"{API}/accounts", params={"currency_code": "USD"}, headers=headers["staff"])).json()
    assert {a["name"] for a in accounts} == {"USD Cash", "USD Bank"}


@pytest.mark.asyncio
async def test_notification_read_endpoints(client, headers, seed, completed_order):
    await client.post(f"{API}/approval-requests", json={
        "entity_type": "order",
        "entity_id": completed_order["id"],
        "request_type": "delete",
        "reason": "Duplicate",
    }, headers=headers["staff"])

    inbox = (await client.get(f"{API}/notifications", headers=headers["admin"])).json()
    notification_id = inbox["notifications"][0]["id"]

    response = await client.patch(f"{API}/notifications/{notification_id}/read", headers=headers["approver"])
    assert response.status_code == 404

    response = await client.patch(f"{API}/notifications/{notification_id}/read", headers=headers["admin"])
    assert response.json() == {"success": True, "updated": 1}
    assert (await client.get(f"{API}/notifications", headers=headers["admin"])).json()["unread_count"] == 0

    response = await client.patch(f"{API}/notifications/read-all", headers=headers["approver"])
    assert response.json() == {"success": True, "updated": 1}


@pytest.mark.asyncio
async def test_failed_approval_leaves_nothing_behind(client, headers, seed, completed_order, mocker):
    order_id = completed_order["id"]
    eur = seed.accounts["EUR Bank"].id
    request = (await client.post(f"{API}/approval-requests", json={
        "entity_type": "order",
        "entity_id": order_id,
        "request_type": "edit",
        "reason": "Customer received 110",
        "request_data": {"payments": [{"amount": 110.0}], "remarks": "paid 110"},
    }, headers=headers["staff"])).json()

    # Fails after the payment swap, the status restore and the request update
    audit = mocker.patch(
        "backend.app.domain.approvals.workflow.log_event",
        side_effect=InvalidStateError("Audit trail unavailable"),
    )
    response = await client.post(f"{API}/approval-requests/{request['id']}/approve", headers=headers["approver"])
    assert response.status_code == 409
    audit.assert_called_once()

    ledger = (await client.get(f"{API}/accounts/{eur}/transactions", headers=headers["staff"])).json()
    assert ledger["balance"] == pytest.approx(-90.0)
    assert len(ledger["transactions"]) == 1

    details = (await client.get(f"{API}/orders/{order_id}", headers=headers["staff"])).json()
    assert details["order"]["status"] == "pending_amend"
    assert details["order"]["remarks"] is None
    assert [(p["amount"], p["status"]) for p in details["payments"]] == [(90.0, "confirmed")]

    stored = (await client.get(f"{API}/approval-requests/{request['id']}", headers=headers["staff"])).json()
    assert stored["status"] == "pending"
    assert stored["approved_by"] is None
    inbox = (await client.get(f"{API}/notifications", headers=headers["staff"])).json()
    assert inbox["unread_count"] == 0

    mocker.stopall()
    response = await client.post(f"{API}/approval-requests/{request['id']}/approve", headers=headers["approver"])
    assert response.status_code == 200
    ledger = (await client.get(f"{API}/accounts/{eur}/transactions", headers=headers["staff"])).json()
    assert ledger["balance"] == pytest.approx(-110.0)
