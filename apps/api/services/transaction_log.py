"""Transaction log: listing, serialization and replay of credit history."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction


@dataclass
class LedgerAudit:
    account_id: str
    consistent: bool
    stored_balance: Decimal
    replayed_balance: Decimal
    transaction_count: int
    first_mismatch_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "consistent": self.consistent,
            "stored_balance": float(self.stored_balance),
            "replayed_balance": float(self.replayed_balance),
            "transaction_count": self.transaction_count,
            "first_mismatch_id": self.first_mismatch_id,
        }


async def list_transactions(
    account_id: str,
    db: AsyncSession,
    *,
    limit: Optional[int] = None,
    offset: int = 0,
    newest_first: bool = True,
) -> List[CreditTransaction]:
    order = CreditTransaction.id.desc() if newest_first else CreditTransaction.id.asc()
    query = select(CreditTransaction).where(CreditTransaction.account_id == account_id).order_by(order)
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_transactions(account_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == account_id)
    )
    return int(result.scalar() or 0)


def replay_balance(transactions: Iterable[CreditTransaction]) -> Decimal:
    """Fold transaction amounts starting from a zero balance."""
    balance = Decimal("0")
    for tx in transactions:
        balance += Decimal(tx.amount)
    return balance


def _first_inconsistency(transactions: Iterable[CreditTransaction]) -> Tuple[Decimal, Optional[int]]:
    running = Decimal("0")
    mismatch_id: Optional[int] = None
    for tx in transactions:
        running += Decimal(tx.amount)
        if mismatch_id is None and (running != Decimal(tx.balance_after) or running < 0):
            mismatch_id = tx.id
    return running, mismatch_id


async def audit_account(account_id: str, db: AsyncSession) -> Optional[LedgerAudit]:
    """Replay an account's log in commit order and compare with the stored balance."""
    account_result = await db.execute(select(Account).where(Account.id == account_id))
    account = account_result.scalar_one_or_none()
    if not account:
        return None

    transactions = await list_transactions(account_id, db, newest_first=False)
    replayed, mismatch_id = _first_inconsistency(transactions)
    stored = Decimal(account.balance)
    return LedgerAudit(
        account_id=account_id,
        consistent=mismatch_id is None and replayed == stored,
        stored_balance=stored,
        replayed_balance=replayed,
        transaction_count=len(transactions),
        first_mismatch_id=mismatch_id,
    )


def serialize_transaction(tx: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "account_id": tx.account_id,
        "amount": float(tx.amount),
        "balance_after": float(tx.balance_after),
        "kind": tx.kind,
        "description": tx.description,
        "metadata": tx.metadata_json,
        "refund_of_id": tx.refund_of_id,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }
