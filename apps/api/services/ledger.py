"""Credit ledger: debits, admin adjustments and refunds.

Every mutation runs as one read-modify-write unit per account. The account
row is read with ``FOR UPDATE`` (a real row lock on PostgreSQL) and written
through SQLAlchemy's version counter, so a writer that lost a race fails its
UPDATE with ``StaleDataError`` instead of overwriting the balance. Lost races
and transient storage errors roll the unit back and retry it from the read.

Public operations never raise storage or ledger errors; they return a
``LedgerResult``. Callers must only perform a paid action when ``ok`` is true.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.account import CREDIT_SCALE, Account
from models.credit_transaction import CreditTransaction
from services.balance_store import get_account, lock_account
from services.cost_catalog import BILLABLE_KINDS, CreditKind
from services.credit_context import (
    AdminContext,
    RefundContext,
    TransactionContext,
    check_context_for_kind,
    dump_context,
)

logger = logging.getLogger(__name__)

CREDIT_QUANTUM = Decimal(1).scaleb(-CREDIT_SCALE)


class LedgerErrorCode(str, Enum):
    ACCOUNT_NOT_FOUND = "account_not_found"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    RESULTING_BALANCE_NEGATIVE = "resulting_balance_negative"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    STORAGE_FAILURE = "storage_failure"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    NOT_REFUNDABLE = "not_refundable"


class LedgerError(Exception):
    code: LedgerErrorCode = LedgerErrorCode.STORAGE_FAILURE

    def __init__(self, message: str, *, balance: Optional[Decimal] = None, required: Optional[Decimal] = None):
        super().__init__(message)
        self.message = message
        self.balance = balance
        self.required = required


class AccountNotFound(LedgerError):
    code = LedgerErrorCode.ACCOUNT_NOT_FOUND


class InsufficientCredits(LedgerError):
    code = LedgerErrorCode.INSUFFICIENT_CREDITS


class ResultingBalanceNegative(LedgerError):
    code = LedgerErrorCode.RESULTING_BALANCE_NEGATIVE


class ConcurrencyConflict(LedgerError):
    code = LedgerErrorCode.CONCURRENCY_CONFLICT


class LedgerStorageFailure(LedgerError):
    code = LedgerErrorCode.STORAGE_FAILURE


class TransactionNotFound(LedgerError):
    code = LedgerErrorCode.TRANSACTION_NOT_FOUND


class NotRefundable(LedgerError):
    code = LedgerErrorCode.NOT_REFUNDABLE


@dataclass(frozen=True)
class LedgerResult:
    ok: bool
    new_balance: Decimal
    error: Optional[LedgerErrorCode] = None
    message: Optional[str] = None
    required: Optional[Decimal] = None
    transaction_id: Optional[int] = None

    @classmethod
    def from_error(cls, exc: LedgerError) -> "LedgerResult":
        return cls(
            ok=False,
            new_balance=exc.balance if exc.balance is not None else Decimal("0"),
            error=exc.code,
            message=exc.message,
            required=exc.required,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.ok,
            "new_balance": float(self.new_balance),
        }
        if self.transaction_id is not None:
            payload["transaction_id"] = self.transaction_id
        if self.error is not None:
            payload["error"] = self.error.value
        return payload


@dataclass(frozen=True)
class _Applied:
    new_balance: Decimal
    transaction_id: int


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _credit_amount(value: Any) -> Decimal:
    """Parse an amount and reject precision the balance columns cannot store."""
    try:
        amount = _to_decimal(value)
        exact = amount.is_finite() and amount == amount.quantize(CREDIT_QUANTUM)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid credit amount: {value}") from exc
    if not exact:
        raise ValueError(f"Credit amounts allow at most {CREDIT_SCALE} decimal places, got {value}")
    return amount


def _backoff_seconds(attempt: int) -> float:
    base = max(float(settings.LEDGER_RETRY_BACKOFF_SECONDS), 0.0)
    return min(base * attempt, max(float(settings.LEDGER_RETRY_BACKOFF_MAX_SECONDS), 0.0))


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(exc.connection_invalidated)


async def _run_serialized(
    op: str,
    account_id: str,
    db: AsyncSession,
    unit: Callable[[], Awaitable[_Applied]],
) -> _Applied:
    """Run ``unit`` and commit, retrying lost races and transient failures."""
    attempts = max(int(settings.LEDGER_MAX_ATTEMPTS), 1)
    last_error: Optional[LedgerError] = None
    for attempt in range(1, attempts + 1):
        try:
            applied = await unit()
            await db.commit()
            if attempt > 1:
                logger.info("ledger_retry_ok op=%s account=%s attempt=%s", op, account_id, attempt)
            return applied
        except LedgerError:
            await db.rollback()
            raise
        except StaleDataError as exc:
            await db.rollback()
            last_error = ConcurrencyConflict(
                "Credit balance changed concurrently. Please try again."
            )
            logger.warning(
                "ledger_conflict op=%s account=%s attempt=%s error=%s", op, account_id, attempt, exc
            )
        except DBAPIError as exc:
            await db.rollback()
            if not _is_transient(exc):
                logger.error("ledger_storage_error op=%s account=%s error=%s", op, account_id, exc)
                raise LedgerStorageFailure("Credits are temporarily unavailable. Please try again.") from exc
            last_error = LedgerStorageFailure("Credits are temporarily unavailable. Please try again.")
            logger.warning(
                "ledger_storage_retry op=%s account=%s attempt=%s error=%s", op, account_id, attempt, exc
            )
        except Exception:
            await db.rollback()
            raise

        if attempt < attempts:
            await asyncio.sleep(_backoff_seconds(attempt))

    logger.error("ledger_retries_exhausted op=%s account=%s attempts=%s", op, account_id, attempts)
    raise last_error or LedgerStorageFailure("Credits are temporarily unavailable. Please try again.")


def _append_transaction(
    account: Account,
    db: AsyncSession,
    *,
    amount: Decimal,
    kind: CreditKind,
    description: Optional[str],
    context: Optional[TransactionContext],
    refund_of_id: Optional[int] = None,
) -> CreditTransaction:
    tx = CreditTransaction(
        account_id=account.id,
        amount=amount,
        balance_after=account.balance,
        kind=kind.value,
        description=description,
        metadata_json=dump_context(context),
        refund_of_id=refund_of_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(tx)
    return tx


async def _locked_account(account_id: str, db: AsyncSession) -> Account:
    account = await lock_account(account_id, db)
    if not account:
        raise AccountNotFound(f"Account {account_id} not found.")
    return account


async def debit_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: Decimal | int | float,
    kind: CreditKind | str,
    description: str,
    context: Optional[TransactionContext] = None,
) -> LedgerResult:
    """Charge ``amount`` credits for a billable operation."""
    cost = _credit_amount(amount)
    resolved_kind = CreditKind(kind)
    if cost <= 0:
        raise ValueError("Debit amount must be greater than 0")
    if resolved_kind not in BILLABLE_KINDS:
        raise ValueError(f"{resolved_kind.value} is not a billable operation kind")
    check_context_for_kind(resolved_kind, context)

    async def unit() -> _Applied:
        account = await _locked_account(account_id, db)
        balance = _to_decimal(account.balance)
        if balance < cost:
            raise InsufficientCredits(
                f"Insufficient credits. Required: {cost}, available: {balance}. Top up credits to continue.",
                balance=balance,
                required=cost,
            )
        account.balance = balance - cost
        account.total_used = _to_decimal(account.total_used or 0) + cost
        tx = _append_transaction(
            account,
            db,
            amount=-cost,
            kind=resolved_kind,
            description=description,
            context=context,
        )
        await db.flush()
        return _Applied(new_balance=account.balance, transaction_id=tx.id)

    try:
        applied = await _run_serialized("debit", account_id, db, unit)
    except LedgerError as exc:
        logger.info(
            "credit_debit_rejected account=%s kind=%s amount=%s error=%s",
            account_id,
            resolved_kind.value,
            cost,
            exc.code.value,
        )
        return LedgerResult.from_error(exc)

    logger.info(
        "credit_debit account=%s kind=%s amount=%s balance_after=%s tx=%s",
        account_id,
        resolved_kind.value,
        cost,
        applied.new_balance,
        applied.transaction_id,
    )
    return LedgerResult(ok=True, new_balance=applied.new_balance, transaction_id=applied.transaction_id)


async def admin_adjust_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: Decimal | int | float,
    description: Optional[str] = None,
    note: Optional[str] = None,
) -> LedgerResult:
    """Grant (positive) or manually deduct (negative) credits."""
    delta = _credit_amount(amount)
    kind = CreditKind.ADMIN_ADD if delta >= 0 else CreditKind.ADMIN_DEDUCT
    if description is None:
        description = (
            f"Admin added {delta} credits" if delta >= 0 else f"Admin deducted {abs(delta)} credits"
        )
    context = AdminContext(admin_note=note)

    async def unit() -> _Applied:
        account = await _locked_account(account_id, db)
        balance = _to_decimal(account.balance)
        if balance + delta < 0:
            raise ResultingBalanceNegative(
                f"Insufficient credits to deduct. Available: {balance}, requested: {abs(delta)}.",
                balance=balance,
                required=abs(delta),
            )
        account.balance = balance + delta
        tx = _append_transaction(
            account,
            db,
            amount=delta,
            kind=kind,
            description=description,
            context=context,
        )
        await db.flush()
        return _Applied(new_balance=account.balance, transaction_id=tx.id)

    try:
        applied = await _run_serialized("admin_adjust", account_id, db, unit)
    except LedgerError as exc:
        logger.info("credit_adjust_rejected account=%s amount=%s error=%s", account_id, delta, exc.code.value)
        return LedgerResult.from_error(exc)

    logger.info(
        "credit_adjust account=%s kind=%s amount=%s balance_after=%s tx=%s",
        account_id,
        kind.value,
        delta,
        applied.new_balance,
        applied.transaction_id,
    )
    return LedgerResult(ok=True, new_balance=applied.new_balance, transaction_id=applied.transaction_id)


async def refund_debit(
    transaction_id: int,
    db: AsyncSession,
    *,
    reason: Optional[str] = None,
) -> LedgerResult:
    """Credit back a billable debit exactly once."""
    try:
        result = await db.execute(select(CreditTransaction).where(CreditTransaction.id == transaction_id))
        debit = result.scalar_one_or_none()
    except DBAPIError as exc:
        await db.rollback()
        logger.error("ledger_storage_error op=refund tx=%s error=%s", transaction_id, exc)
        return LedgerResult.from_error(
            LedgerStorageFailure("Credits are temporarily unavailable. Please try again.")
        )
    if not debit:
        return LedgerResult.from_error(TransactionNotFound(f"Transaction {transaction_id} not found."))

    account_id = debit.account_id
    debit_kind = debit.kind
    debit_amount = _to_decimal(debit.amount)
    refund_amount = abs(debit_amount)

    async def unit() -> _Applied:
        account = await _locked_account(account_id, db)
        balance = _to_decimal(account.balance)
        if debit_kind not in {kind.value for kind in BILLABLE_KINDS} or debit_amount >= 0:
            raise NotRefundable(f"Transaction {transaction_id} is not a billable debit.", balance=balance)
        existing = await db.execute(
            select(CreditTransaction.id).where(CreditTransaction.refund_of_id == transaction_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise NotRefundable(f"Transaction {transaction_id} was already refunded.", balance=balance)

        account.balance = balance + refund_amount
        tx = _append_transaction(
            account,
            db,
            amount=refund_amount,
            kind=CreditKind.REFUND,
            description=f"Refund for {debit_kind} transaction {transaction_id}",
            context=RefundContext(refunded_transaction_id=transaction_id, reason=reason),
            refund_of_id=transaction_id,
        )
        await db.flush()
        return _Applied(new_balance=account.balance, transaction_id=tx.id)

    try:
        applied = await _run_serialized("refund", account_id, db, unit)
    except LedgerError as exc:
        logger.info("credit_refund_rejected tx=%s error=%s", transaction_id, exc.code.value)
        return LedgerResult.from_error(exc)

    logger.info(
        "credit_refund account=%s refunded_tx=%s amount=%s balance_after=%s",
        account_id,
        transaction_id,
        refund_amount,
        applied.new_balance,
    )
    return LedgerResult(ok=True, new_balance=applied.new_balance, transaction_id=applied.transaction_id)


async def get_balance(account_id: str, db: AsyncSession) -> Decimal:
    account = await get_account(account_id, db)
    if not account:
        raise AccountNotFound(f"Account {account_id} not found.")
    await db.refresh(account)
    return _to_decimal(account.balance)


async def has_sufficient_credits(account_id: str, required: Decimal | int | float, db: AsyncSession) -> bool:
    """Advisory check for display; ``debit_credits`` is the only real gate."""
    try:
        balance = await get_balance(account_id, db)
    except AccountNotFound:
        return False
    return balance >= _to_decimal(required)
