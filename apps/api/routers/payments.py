"""Payment checkout, webhook and sync endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account, get_optional_account
from routers.dependencies import get_payment_provider, get_reconciliation_engine
from routers.rate_limit import rate_limit
from services.checkout import create_checkout
from services.errors import PartialReconciliationFailure, ProviderNotConfigured, SignatureVerificationError
from services.payment_provider import PaymentProvider
from services.receipts import get_receipt, list_receipts
from services.reconciliation import ReconciliationEngine

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    request_id: Optional[str] = Field(default=None, alias="requestId")
    plan_type: Optional[str] = Field(default=None, alias="planType")
    email: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1, le=100)

    model_config = {"populate_by_name": True}


@router.post("/checkout")
async def checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("payments_checkout", limit=30, window_seconds=3600)),
    account: Optional[Account] = Depends(get_optional_account),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Create a checkout session for a request unlock, subscription or top-up."""
    email = request.email or (account.email if account is not None else None)
    return await create_checkout(
        db,
        provider,
        request_id=request.request_id,
        plan_type=request.plan_type,
        email=email,
        quantity=request.quantity,
    )


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """Provider callback. 400 on bad signature, 500 asks the provider to retry."""
    payload = await request.body()
    try:
        result = await engine.handle_webhook(payload, stripe_signature)
    except SignatureVerificationError as exc:
        logger.warning("Rejected webhook: %s", exc.detail)
        return JSONResponse(status_code=400, content={"received": False, "detail": exc.detail})
    except ProviderNotConfigured as exc:
        return JSONResponse(status_code=503, content={"received": False, "detail": exc.detail})
    except Exception:
        logger.exception("Webhook processing failed; provider will retry")
        return JSONResponse(status_code=500, content={"received": False, "detail": "Webhook processing failed"})
    if "warning" in result:
        logger.error("Webhook acknowledged with partial failure: %s", result["warning"])
    return result


@router.post("/sync")
async def sync_all_payments(
    _rate_limit: None = Depends(rate_limit("payments_sync", limit=60, window_seconds=3600)),
    account: Account = Depends(get_current_account),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """Reconcile every pending or partially applied payment for the caller."""
    summary = await engine.sync_account(account.email)
    return {
        "success": True,
        "message": (
            f"Synced {summary['synced_count']} payment(s)"
            if summary["synced_count"]
            else "Payment not found or not completed"
        ),
        **summary,
    }


@router.post("/{request_id}/sync")
async def sync_request_payment(
    request_id: str,
    _rate_limit: None = Depends(rate_limit("payments_sync", limit=60, window_seconds=3600)),
    account: Account = Depends(get_current_account),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """Re-check the latest payment for one request against the provider."""
    try:
        result = await engine.sync_request(request_id, account.email)
    except PartialReconciliationFailure as exc:
        return {"success": False, "warning": exc.detail, "payment_record_id": exc.payment_record_id}
    return {"success": True, **result.to_dict()}


@router.get("/receipts")
async def payment_receipts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Succeeded payments for the caller, including managed-service fees."""
    return await list_receipts(db, account, page=page, limit=limit)


@router.get("/receipts/{payment_record_id}")
async def payment_receipt(
    payment_record_id: str,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_receipt(db, account, payment_record_id)
