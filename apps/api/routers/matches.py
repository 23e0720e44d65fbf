"""Match report preview, access and generation endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account, get_optional_account
from routers.rate_limit import rate_limit
from services.report_gate import (
    generate_report,
    get_full_report,
    get_preview,
    process_matching,
    require_owned_report,
    unlock_with_credit,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{request_id}/preview")
async def match_preview(request_id: str, db: AsyncSession = Depends(get_db)):
    """Public teaser: summary, category, match count and score; no contact details."""
    return await get_preview(db, request_id)


@router.get("/{request_id}/full")
async def full_report(
    request_id: str,
    token: Optional[str] = Query(default=None),
    email: Optional[str] = Query(default=None),
    viewer: Optional[Account] = Depends(get_optional_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_full_report(db, request_id, viewer=viewer, token=token, email=email)


@router.post("/{request_id}/unlock")
async def unlock_report_with_credit(
    request_id: str,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Spend one credit to unlock a pending report."""
    return await unlock_with_credit(db, account, request_id)


@router.post("/{request_id}/generate")
async def generate_full_report(
    request_id: str,
    _rate_limit: None = Depends(rate_limit("matches_generate", limit=30, window_seconds=3600)),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Run matching for a report that payment has already unlocked."""
    await require_owned_report(db, request_id, account)
    report = await generate_report(db, request_id)
    logger.info("Report for request %s generated on demand by account %s", request_id, account.id)
    return {"request_id": request_id, "status": report.status, "preview": report.preview_json}


@router.post("/{request_id}/process")
async def process_request_matching(
    request_id: str,
    _rate_limit: None = Depends(rate_limit("matches_generate", limit=30, window_seconds=3600)),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Inline matching: free once unlocked, one credit for an active subscriber otherwise."""
    return await process_matching(db, account, request_id)
