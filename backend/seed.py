"""
Database seeding script for local development.

Creates roles, one user per role, the reference currencies and an account
per currency. Run this script after the database is set up but before first use:

    python -m backend.seed
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app import main  # noqa: F401  Registers every model with Base
from backend.app.db.session import AsyncSessionLocal, Base, engine
from backend.app.models.account import Account
from backend.app.models.currency import Currency
from backend.app.models.enums import Capability
from backend.app.models.user import Role, User

logger = logging.getLogger(__name__)


def _actions(*capabilities: Capability) -> Dict:
    return {"sections": ["orders", "expenses", "transfers"], "actions": {cap.value: True for cap in capabilities}}


ROLE_PERMISSIONS = {
    "admin": _actions(*Capability),
    "approver": _actions(Capability.APPROVE_ORDER_EDIT, Capability.APPROVE_ORDER_DELETE),
    "staff": _actions(Capability.REQUEST_ORDER_EDIT, Capability.REQUEST_ORDER_DELETE),
    "viewer": _actions(),
}

# code -> (name, conversion_rate_buy); USDT deliberately has no rate
CURRENCIES = {
    "USD": ("US Dollar", 1.0),
    "EUR": ("Euro", 0.92),
    "AED": ("UAE Dirham", 3.6725),
    "USDT": ("Tether", None),
}

ACCOUNTS = (
    ("USD Cash", "USD"),
    ("USD Bank", "USD"),
    ("EUR Bank", "EUR"),
    ("AED Cash", "AED"),
    ("USDT Wallet", "USDT"),
)


async def seed_reference_data(db: AsyncSession) -> Dict[str, Dict]:
    """
    Insert roles, users, currencies and accounts (flushed, not committed).

    Returns:
        {"users": {role: User}, "accounts": {name: Account}}
    """
    roles = {name: Role(name=name, permissions=perms) for name, perms in ROLE_PERMISSIONS.items()}
    db.add_all(roles.values())
    await db.flush()

    users = {
        name: User(username=name, email=f"{name}@otc.local", role_id=role.id, is_active=True)
        for name, role in roles.items()
    }
    db.add_all(users.values())

    db.add_all(
        Currency(code=code, name=name, conversion_rate_buy=rate)
        for code, (name, rate) in CURRENCIES.items()
    )

    accounts = {name: Account(name=name, currency_code=code, balance=0.0) for name, code in ACCOUNTS}
    db.add_all(accounts.values())
    await db.flush()

    return {"users": users, "accounts": accounts}


async def seed():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        existing = await db.execute(select(Role).where(Role.name == "admin"))
        if existing.scalar_one_or_none():
            logger.info("Reference data already present, skipping seeding")
            return

        data = await seed_reference_data(db)
        await db.commit()

        for name, user in data["users"].items():
            logger.info("Created user %s (id=%s), send it as the X-User-Id header", name, user.id)
        logger.info("Created %d accounts", len(data["accounts"]))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(seed())
