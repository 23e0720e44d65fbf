"""Billing router: plan pricing and credit balance."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account
from services.checkout import get_pricing
from services.ledger import get_credit_summary

router = APIRouter()


@router.get("/plans")
async def pricing_plans(db: AsyncSession = Depends(get_db)):
    pricing = await get_pricing(db)
    return {
        "plans": [
            {"plan_type": plan_type, **details, "amount": round(details["amount_cents"] / 100.0, 2)}
            for plan_type, details in pricing.items()
        ]
    }


@router.get("/credits")
async def credits_summary(
    limit: int = Query(default=30, ge=1, le=200),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(account, db, limit=limit)
