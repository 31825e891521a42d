"""Typed context stored alongside credit transactions."""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from services.cost_catalog import CreditKind


IMAGE_PROMPT_MAX_CHARS = 200


class BlogContext(BaseModel):
    context: Literal["blog"] = "blog"
    blog_id: Optional[int] = None
    blog_title: Optional[str] = None


class ImageContext(BaseModel):
    context: Literal["image"] = "image"
    blog_id: Optional[int] = None
    image_id: Optional[int] = None
    image_prompt: Optional[str] = None

    @field_validator("image_prompt")
    @classmethod
    def _truncate_prompt(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value[:IMAGE_PROMPT_MAX_CHARS]


class AdminContext(BaseModel):
    context: Literal["admin"] = "admin"
    admin_note: Optional[str] = None


class RefundContext(BaseModel):
    context: Literal["refund"] = "refund"
    refunded_transaction_id: int
    reason: Optional[str] = None


TransactionContext = Annotated[
    Union[BlogContext, ImageContext, AdminContext, RefundContext],
    Field(discriminator="context"),
]

_context_adapter = TypeAdapter(TransactionContext)

CONTEXT_BY_KIND = {
    CreditKind.BLOG_GENERATION: BlogContext,
    CreditKind.IMAGE_GENERATION: ImageContext,
    CreditKind.IMAGE_EDIT: ImageContext,
    CreditKind.ADMIN_ADD: AdminContext,
    CreditKind.ADMIN_DEDUCT: AdminContext,
    CreditKind.REFUND: RefundContext,
}


def check_context_for_kind(kind: CreditKind, context: Optional[TransactionContext]) -> None:
    """Reject a context variant that does not belong to the transaction kind."""
    if context is None:
        return
    expected = CONTEXT_BY_KIND[kind]
    if not isinstance(context, expected):
        raise ValueError(
            f"{type(context).__name__} cannot describe a {kind.value} transaction; expected {expected.__name__}"
        )


def dump_context(context: Optional[TransactionContext]) -> Optional[Dict[str, Any]]:
    if context is None:
        return None
    return context.model_dump(exclude_none=True)


def load_context(raw: Optional[Dict[str, Any]]) -> Optional[TransactionContext]:
    if not raw:
        return None
    return _context_adapter.validate_python(raw)
