"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    accounts, approvals, expenses, notifications, order_ledger, orders, uploads
)

router = APIRouter()

# Orders and their sub-ledger rows
router.include_router(orders.router)
router.include_router(order_ledger.receipts_router)
router.include_router(order_ledger.payments_router)
router.include_router(order_ledger.profits_router)
router.include_router(order_ledger.service_charges_router)

# Approval workflow
router.include_router(approvals.router)

# Accounts, expenses and transfers
router.include_router(accounts.router)
router.include_router(expenses.router)
router.include_router(expenses.transfers_router)

# Supporting services
router.include_router(uploads.router)
router.include_router(notifications.router)
