"""Account onboarding router."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.balance_store import create_account


class OnboardingRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    company_name: Optional[str] = Field(default=None, max_length=200)
    author_name: Optional[str] = Field(default=None, max_length=200)


router = APIRouter()


@router.post("")
async def onboard_account(
    request: OnboardingRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create the session's account with an empty credit balance."""
    account = await create_account(
        db,
        account_id=auth.account_id,
        email=request.email or auth.email,
        company_name=request.company_name,
        author_name=request.author_name,
    )
    return {
        "id": account.id,
        "email": account.email,
        "company_name": account.company_name,
        "author_name": account.author_name,
        "balance": float(account.balance),
        "total_used": float(account.total_used or 0),
    }
