"""Credit cost catalog: operation kinds and their configured prices."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Dict

from config import settings


class CreditKind(str, Enum):
    """Closed set of transaction categories."""

    BLOG_GENERATION = "blog_generation"
    IMAGE_GENERATION = "image_generation"
    IMAGE_EDIT = "image_edit"
    ADMIN_ADD = "admin_add"
    ADMIN_DEDUCT = "admin_deduct"
    REFUND = "refund"


BILLABLE_KINDS = frozenset(
    {
        CreditKind.BLOG_GENERATION,
        CreditKind.IMAGE_GENERATION,
        CreditKind.IMAGE_EDIT,
    }
)


def _configured_costs() -> Dict[CreditKind, Decimal]:
    return {
        CreditKind.BLOG_GENERATION: Decimal(settings.CREDIT_COST_BLOG_GENERATION),
        CreditKind.IMAGE_GENERATION: Decimal(settings.CREDIT_COST_IMAGE_GENERATION),
        CreditKind.IMAGE_EDIT: Decimal(settings.CREDIT_COST_IMAGE_EDIT),
    }


def get_credit_cost(kind: CreditKind | str) -> Decimal:
    """Return the fixed price of a billable operation kind."""
    resolved = CreditKind(kind)
    if resolved not in BILLABLE_KINDS:
        raise ValueError(f"{resolved.value} is not a billable operation kind")
    return _configured_costs()[resolved]


def credit_cost_catalog() -> Dict[str, Decimal]:
    return {kind.value: cost for kind, cost in _configured_costs().items()}
