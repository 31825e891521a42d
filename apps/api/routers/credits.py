"""Credits router: debits, balance and usage summary for the session account."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import CREDIT_PRECISION, CREDIT_SCALE
from routers.auth_scope import AuthContext, ensure_account_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.balance_store import get_account
from services.cost_catalog import CreditKind, get_credit_cost
from services.credit_context import TransactionContext
from services.credit_reports import get_credit_summary
from services.ledger import LedgerErrorCode, LedgerResult, debit_credits
from services.transaction_log import count_transactions, list_transactions, serialize_transaction

router = APIRouter()
logger = logging.getLogger(__name__)

GENERIC_LEDGER_FAILURE = "Credits are temporarily unavailable. Please try again."

DEFAULT_DESCRIPTIONS = {
    CreditKind.BLOG_GENERATION: "AI blog generation",
    CreditKind.IMAGE_GENERATION: "AI image generation",
    CreditKind.IMAGE_EDIT: "AI image edit",
}


class DebitRequest(BaseModel):
    account_id: Optional[str] = None
    kind: CreditKind
    cost: Optional[Decimal] = Field(
        default=None,
        gt=0,
        max_digits=CREDIT_PRECISION,
        decimal_places=CREDIT_SCALE,
    )
    description: Optional[str] = Field(default=None, max_length=500)
    context: Optional[TransactionContext] = None


def raise_for_ledger_error(result: LedgerResult) -> None:
    """Translate a rejected ledger result into the matching HTTP error."""
    if result.ok:
        return
    if result.error == LedgerErrorCode.INSUFFICIENT_CREDITS:
        raise HTTPException(
            status_code=402,
            detail={
                "error": result.error.value,
                "message": result.message,
                "credits_required": float(result.required or 0),
                "current_credits": float(result.new_balance),
            },
        )
    if result.error == LedgerErrorCode.ACCOUNT_NOT_FOUND:
        raise HTTPException(status_code=404, detail="Account not found.")
    if result.error == LedgerErrorCode.TRANSACTION_NOT_FOUND:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    if result.error in (LedgerErrorCode.RESULTING_BALANCE_NEGATIVE, LedgerErrorCode.NOT_REFUNDABLE):
        raise HTTPException(
            status_code=422,
            detail={
                "error": result.error.value,
                "message": result.message,
                "current_credits": float(result.new_balance),
            },
        )
    raise HTTPException(status_code=503, detail=GENERIC_LEDGER_FAILURE)


@router.post("/debit")
async def debit(
    request: DebitRequest,
    _rate_limit: None = Depends(rate_limit("credits_debit", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, request.account_id)
    try:
        cost = request.cost if request.cost is not None else get_credit_cost(request.kind)
        result = await debit_credits(
            scoped_account_id,
            db,
            amount=cost,
            kind=request.kind,
            description=request.description or DEFAULT_DESCRIPTIONS.get(request.kind, request.kind.value),
            context=request.context,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    raise_for_ledger_error(result)
    return result.to_dict()


@router.get("/balance")
async def balance(
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, account_id)
    account = await get_account(scoped_account_id, db)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found.")
    return {
        "account_id": account.id,
        "balance": float(account.balance),
        "total_used": float(account.total_used or 0),
    }


@router.get("/summary")
async def summary(
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, account_id)
    payload = await get_credit_summary(scoped_account_id, db)
    if payload is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return payload


@router.get("/transactions")
async def transactions(
    account_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, account_id)
    if not await get_account(scoped_account_id, db):
        raise HTTPException(status_code=404, detail="Account not found.")

    items = await list_transactions(
        scoped_account_id,
        db,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return {
        "items": [serialize_transaction(tx) for tx in items],
        "page": page,
        "page_size": page_size,
        "total_count": await count_transactions(scoped_account_id, db),
    }
