"""Account balance store: onboarding, locked reads and deletion."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction

logger = logging.getLogger(__name__)


async def get_account(account_id: str, db: AsyncSession) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def lock_account(account_id: str, db: AsyncSession) -> Optional[Account]:
    """Load an account for a read-modify-write.

    Takes a row lock where the engine supports ``FOR UPDATE`` and always
    refreshes the identity map, so the version seen here is the one the
    following UPDATE is checked against.
    """
    result = await db.execute(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_account(
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    account_id: Optional[str] = None,
    company_name: Optional[str] = None,
    author_name: Optional[str] = None,
) -> Account:
    """Onboard a tenant with an empty balance, or return the existing account."""
    if account_id:
        existing = await get_account(account_id, db)
        if existing:
            return existing

    account = Account(
        email=email,
        company_name=company_name,
        author_name=author_name,
        balance=Decimal("0"),
        total_used=Decimal("0"),
    )
    if account_id:
        account.id = account_id
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if not account_id:
            raise
        existing = await get_account(account_id, db)
        if not existing:
            raise
        logger.info("account_create_raced account=%s", account_id)
        return existing
    logger.info("account_created account=%s", account.id)
    return account


async def delete_account(account_id: str, db: AsyncSession) -> bool:
    """Delete an account together with its transaction history."""
    account = await get_account(account_id, db)
    if not account:
        return False

    await db.execute(delete(CreditTransaction).where(CreditTransaction.account_id == account_id))
    await db.execute(delete(Account).where(Account.id == account_id))
    await db.commit()
    logger.info("account_deleted account=%s", account_id)
    return True
