"""Read-only reporting over accounts and the credit transaction log."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from config import settings
from models.account import Account
from models.credit_transaction import CreditTransaction
from services.balance_store import get_account
from services.cost_catalog import BILLABLE_KINDS, credit_cost_catalog
from services.transaction_log import list_transactions, serialize_transaction


def _window_start(days: int, now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current - timedelta(days=max(int(days), 0))


def _consumption_filters(account_id: str, since: datetime) -> List[Any]:
    """Billable debits in the window that were not refunded afterwards."""
    refund = aliased(CreditTransaction)
    refunded = select(refund.id).where(refund.refund_of_id == CreditTransaction.id).exists()
    return [
        CreditTransaction.account_id == account_id,
        CreditTransaction.kind.in_([kind.value for kind in BILLABLE_KINDS]),
        CreditTransaction.amount < 0,
        CreditTransaction.created_at >= since,
        ~refunded,
    ]


async def usage_by_kind(account_id: str, db: AsyncSession, *, days: int) -> List[Dict[str, Any]]:
    since = _window_start(days)
    result = await db.execute(
        select(
            CreditTransaction.kind,
            func.sum(-CreditTransaction.amount),
            func.count(CreditTransaction.id),
        )
        .where(*_consumption_filters(account_id, since))
        .group_by(CreditTransaction.kind)
        .order_by(CreditTransaction.kind)
    )
    return [
        {"kind": kind, "total_amount": float(total or 0), "count": int(count or 0)}
        for kind, total, count in result.all()
    ]


async def usage_by_day(account_id: str, db: AsyncSession, *, days: int) -> List[Dict[str, Any]]:
    since = _window_start(days)
    day = func.date(CreditTransaction.created_at)
    result = await db.execute(
        select(day, func.sum(-CreditTransaction.amount))
        .where(*_consumption_filters(account_id, since))
        .group_by(day)
        .order_by(day)
    )
    return [{"date": str(date_value), "total_used": float(total or 0)} for date_value, total in result.all()]


async def get_credit_summary(account_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    account = await get_account(account_id, db)
    if not account:
        return None
    await db.refresh(account)

    recent = await list_transactions(
        account_id,
        db,
        limit=max(int(settings.CREDIT_SUMMARY_RECENT_LIMIT), 1),
    )
    return {
        "account_id": account.id,
        "balance": float(account.balance),
        "total_used": float(account.total_used or 0),
        "account_name": account.author_name or account.company_name or (account.email or "").split("@")[0] or None,
        "company_name": account.company_name,
        "transactions": [serialize_transaction(tx) for tx in recent],
        "usage_by_kind": await usage_by_kind(account_id, db, days=settings.CREDIT_USAGE_WINDOW_DAYS),
        "daily_usage": await usage_by_day(account_id, db, days=settings.CREDIT_DAILY_USAGE_WINDOW_DAYS),
        "credit_costs": {kind: float(cost) for kind, cost in credit_cost_catalog().items()},
    }


async def list_accounts_with_recent(db: AsyncSession) -> List[Dict[str, Any]]:
    """All accounts, newest first, each with its latest transactions."""
    result = await db.execute(select(Account).order_by(Account.created_at.desc(), Account.id))
    accounts = result.scalars().all()
    limit = max(int(settings.ADMIN_RECENT_TRANSACTIONS_LIMIT), 0)

    rows: List[Dict[str, Any]] = []
    for account in accounts:
        recent = await list_transactions(account.id, db, limit=limit) if limit else []
        rows.append(
            {
                "id": account.id,
                "email": account.email,
                "company_name": account.company_name,
                "author_name": account.author_name,
                "balance": float(account.balance),
                "total_used": float(account.total_used or 0),
                "created_at": account.created_at.isoformat() if account.created_at else None,
                "recent_transactions": [serialize_transaction(tx) for tx in recent],
            }
        )
    return rows
