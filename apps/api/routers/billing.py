"""Billing and credits router."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import (
    LedgerKind,
    add_credits,
    ensure_account,
    find_purchase,
    get_balance,
    get_credit_summary,
)
from services.errors import StorageUnavailable
from services.plans import list_active_plans, seed_subscription_plans, serialize_plan

router = APIRouter()
logger = logging.getLogger(__name__)


class BonusRequest(BaseModel):
    amount: int = Field(ge=1)


class PurchaseCallbackRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=64)
    credits: int = Field(ge=1, le=1_000_000)
    billing_reference: str = Field(min_length=1, max_length=255)
    kind: str = Field(default=LedgerKind.PURCHASE, pattern="^(purchase|subscription)$")
    email: Optional[str] = None


def _require_billing_token(x_billing_token: Optional[str]) -> None:
    expected = (settings.BILLING_WEBHOOK_TOKEN or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Billing callback is not configured.")
    if not x_billing_token or not hmac.compare_digest(x_billing_token, expected):
        raise HTTPException(status_code=401, detail="Invalid billing token.")


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.account_id, db, email=auth.email)
    return await get_credit_summary(auth.account_id, db)


@router.get("/balance")
async def credits_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.account_id, db, email=auth.email)
    return {"credits": await get_balance(auth.account_id, db)}


@router.get("/plans")
async def subscription_plans(db: AsyncSession = Depends(get_db)):
    """Active subscription plans in display order. Public for the pricing page."""
    plans = await list_active_plans(db)
    return {"plans": [serialize_plan(plan) for plan in plans]}


@router.post("/plans/seed")
async def seed_plans(
    x_billing_token: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    _require_billing_token(x_billing_token)
    try:
        inserted = await seed_subscription_plans(db)
    except StorageUnavailable as exc:
        logger.exception("Could not seed subscription plans")
        raise HTTPException(status_code=503, detail="Storage unavailable. Retry shortly.") from exc
    return {"ok": True, "inserted": inserted}


@router.post("/bonus")
async def grant_bonus(
    request: BonusRequest,
    _rate_limit: None = Depends(rate_limit("billing_bonus", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if request.amount > max(int(settings.BONUS_CREDITS_MAX), 0):
        raise HTTPException(
            status_code=422,
            detail=f"amount must be at most {settings.BONUS_CREDITS_MAX}",
        )
    await ensure_account(auth.account_id, db, email=auth.email)
    entry = await add_credits(
        auth.account_id,
        db,
        amount=request.amount,
        kind=LedgerKind.BONUS,
        description="Bonus credits",
    )
    return {"ok": True, "credits_added": request.amount, "balance_after": entry.balance_after}


@router.post("/purchase")
async def purchase_callback(
    request: PurchaseCallbackRequest,
    x_billing_token: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Payment provider callback: credits were purchased, add them.

    Payment authenticity is verified by the payment integration before it calls
    this endpoint; here only the shared token is checked. Replays with the same
    ``billing_reference`` are acknowledged without crediting twice.
    """
    _require_billing_token(x_billing_token)
    await ensure_account(request.account_id, db, email=request.email)

    existing = await find_purchase(request.billing_reference, db)
    if existing:
        logger.info("Duplicate purchase callback %s ignored", request.billing_reference)
        return {
            "ok": True,
            "duplicate": True,
            "balance_after": await get_balance(request.account_id, db),
        }

    try:
        entry = await add_credits(
            request.account_id,
            db,
            amount=request.credits,
            kind=request.kind,
            description=f"Purchased {request.credits} credits",
            billing_reference=request.billing_reference,
        )
    except StorageUnavailable as exc:
        if await find_purchase(request.billing_reference, db):
            return {
                "ok": True,
                "duplicate": True,
                "balance_after": await get_balance(request.account_id, db),
            }
        logger.exception("Could not record purchase %s", request.billing_reference)
        raise HTTPException(status_code=503, detail="Storage unavailable. Retry the callback.") from exc

    logger.info(
        "Added %s purchased credit(s) to account %s (%s)",
        request.credits,
        request.account_id,
        request.billing_reference,
    )
    return {"ok": True, "duplicate": False, "balance_after": entry.balance_after}
