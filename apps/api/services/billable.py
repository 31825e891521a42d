"""Caller-side protocol for paid operations.

Usage::

    async with billable_operation(account_id, CreditKind.IMAGE_GENERATION, db,
                                  description="AI image generation",
                                  context=ImageContext(image_prompt=prompt)) as charge:
        image = await backend.generate(prompt)

The debit is committed before the body runs. When the body raises, the charge
is refunded and the exception propagates; a refund that cannot be recorded is
logged as a write-off.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.cost_catalog import CreditKind, get_credit_cost
from services.credit_context import TransactionContext
from services.ledger import LedgerResult, debit_credits, refund_debit

logger = logging.getLogger(__name__)


class BillingRejected(Exception):
    """Raised when the debit gating a paid operation did not go through."""

    def __init__(self, result: LedgerResult):
        super().__init__(result.message or "Credit debit rejected.")
        self.result = result


@asynccontextmanager
async def billable_operation(
    account_id: str,
    kind: CreditKind | str,
    db: AsyncSession,
    *,
    description: str,
    context: Optional[TransactionContext] = None,
    cost: Optional[Decimal] = None,
) -> AsyncIterator[LedgerResult]:
    resolved_kind = CreditKind(kind)
    amount = cost if cost is not None else get_credit_cost(resolved_kind)

    charge = await debit_credits(
        account_id,
        db,
        amount=amount,
        kind=resolved_kind,
        description=description,
        context=context,
    )
    if not charge.ok:
        raise BillingRejected(charge)

    try:
        yield charge
    except Exception as exc:
        try:
            await db.rollback()
            refund = await refund_debit(
                charge.transaction_id,
                db,
                reason=f"{resolved_kind.value} failed: {type(exc).__name__}",
            )
            refund_error = None if refund.ok else (refund.error.value if refund.error else "unknown")
        except Exception as refund_exc:
            refund = None
            refund_error = type(refund_exc).__name__

        if refund_error is None:
            logger.info(
                "billable_refunded account=%s kind=%s tx=%s balance_after=%s",
                account_id,
                resolved_kind.value,
                charge.transaction_id,
                refund.new_balance,
            )
        else:
            logger.error(
                "billable_write_off account=%s kind=%s tx=%s amount=%s error=%s",
                account_id,
                resolved_kind.value,
                charge.transaction_id,
                amount,
                refund_error,
            )
        raise
