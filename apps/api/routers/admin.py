"""Administrative credit tooling: manual adjustments, refunds, audits."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import CREDIT_PRECISION, CREDIT_SCALE
from routers.auth_scope import AuthContext, require_admin
from routers.credits import raise_for_ledger_error
from routers.rate_limit import rate_limit
from services.balance_store import delete_account, get_account
from services.credit_reports import list_accounts_with_recent
from services.ledger import admin_adjust_credits, refund_debit
from services.transaction_log import audit_account

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditAdjustRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: Decimal = Field(max_digits=CREDIT_PRECISION, decimal_places=CREDIT_SCALE)
    note: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("Amount must be a non-zero number")
        return value


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


@router.get("/credits/accounts")
async def list_accounts(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"accounts": await list_accounts_with_recent(db)}


@router.post("/credits/adjust")
async def adjust_credits(
    request: CreditAdjustRequest,
    _rate_limit: None = Depends(rate_limit("admin_credit_adjust", limit=120, window_seconds=3600)),
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    account = await get_account(request.account_id, db)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found.")
    label = account.email or account.id

    result = await admin_adjust_credits(
        request.account_id,
        db,
        amount=request.amount,
        note=request.note or None,
    )
    raise_for_ledger_error(result)

    logger.info(
        "admin_credit_adjust admin=%s account=%s amount=%s", admin.account_id, request.account_id, request.amount
    )
    payload = result.to_dict()
    payload["message"] = (
        f"Added {request.amount} credits to {label}"
        if request.amount > 0
        else f"Deducted {abs(request.amount)} credits from {label}"
    )
    return payload


@router.post("/credits/transactions/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: int,
    request: Optional[RefundRequest] = None,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    reason = request.reason if request else None
    result = await refund_debit(transaction_id, db, reason=reason or f"Manual refund by {admin.account_id}")
    raise_for_ledger_error(result)
    return result.to_dict()


@router.get("/credits/accounts/{account_id}/audit")
async def audit(
    account_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    report = await audit_account(account_id, db)
    if report is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    if not report.consistent:
        logger.error(
            "ledger_audit_mismatch account=%s stored=%s replayed=%s first_mismatch=%s",
            account_id,
            report.stored_balance,
            report.replayed_balance,
            report.first_mismatch_id,
        )
    return report.to_dict()


@router.delete("/accounts/{account_id}")
async def remove_account(
    account_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if not await delete_account(account_id, db):
        raise HTTPException(status_code=404, detail="Account not found.")
    logger.info("admin_account_delete admin=%s account=%s", admin.account_id, account_id)
    return {"ok": True, "account_id": account_id}
