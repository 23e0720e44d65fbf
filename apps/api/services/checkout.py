"""Checkout session creation and the plan pricing map."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.buyer_request import BuyerRequest
from models.payment_record import PaymentRecord
from models.plan import Plan
from services.access_token import PAYMENT_TOKEN, generate_access_token
from services.accounts import get_account_by_email, validate_email
from services.entitlements import (
    ENTERPRISE_PLAN,
    EXTRA_CREDIT_PLAN,
    MANAGED_SERVICE_PLAN,
    MANAGED_SERVICE_SAVINGS_FEE_PLAN,
    ONE_TIME_PLAN,
)
from services.errors import ProviderNotConfigured, ProviderUnavailable, ValidationError
from services.payment_provider import PaymentProvider
from services.reconciliation import GENERAL_REQUEST_REF
from services.report_gate import ensure_match_report, get_buyer_request, unlock_report

logger = logging.getLogger(__name__)

MAX_TOP_UP_QUANTITY = 100


async def get_pricing(db: AsyncSession) -> Dict[str, Dict[str, Any]]:
    """Checkout line items keyed by plan type, derived from the active catalog."""
    result = await db.execute(
        select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.display_order, Plan.plan_type)
    )
    pricing: Dict[str, Dict[str, Any]] = {}
    for plan in result.scalars().all():
        if plan.plan_type == "basic":
            pricing[ONE_TIME_PLAN] = {
                "name": plan.name,
                "description": plan.description,
                "amount_cents": plan.price_cents,
                "interval": None,
            }
            continue
        pricing[f"{plan.plan_type}_monthly"] = {
            "name": f"{plan.name} (Monthly)",
            "description": plan.description,
            "amount_cents": plan.price_cents,
            "interval": "month",
        }
        if plan.has_annual_pricing and plan.annual_price_cents:
            pricing[f"{plan.plan_type}_annual"] = {
                "name": f"{plan.name} (Annual)",
                "description": plan.description,
                "amount_cents": plan.annual_price_cents,
                "interval": "year",
            }
    pricing[EXTRA_CREDIT_PLAN] = {
        "name": "Extra Match Credit",
        "description": "One additional full match report",
        "amount_cents": settings.EXTRA_CREDIT_PRICE_CENTS,
        "interval": None,
    }
    return pricing


def _checkout_urls(request_id: str, email: str, verified: bool):
    dashboard = settings.CUSTOMER_DASHBOARD_URL.rstrip("/")
    frontend = settings.FRONTEND_URL.rstrip("/")
    if request_id == GENERAL_REQUEST_REF:
        return (
            f"{dashboard}/billing?topUp=success&session_id={{CHECKOUT_SESSION_ID}}",
            f"{dashboard}/billing?topUp=canceled",
        )
    if verified:
        success_url = f"{dashboard}/requests/{request_id}?payment=success&session_id={{CHECKOUT_SESSION_ID}}"
    else:
        success_url = f"{frontend}/check-email?email={quote(email)}&session_id={{CHECKOUT_SESSION_ID}}"
    return success_url, f"{frontend}/requests/{request_id}/preview?payment=canceled"


async def create_checkout(
    db: AsyncSession,
    provider: Optional[PaymentProvider],
    *,
    request_id: Optional[str],
    plan_type: Optional[str],
    email: Optional[str],
    quantity: Optional[int] = None,
) -> Dict[str, Any]:
    """Open a provider checkout session and persist its pending PaymentRecord."""
    plan_type = (plan_type or "").strip()
    if not plan_type:
        raise ValidationError("Plan type is required")
    if plan_type == ENTERPRISE_PLAN:
        return {
            "contact_sales": True,
            "sales_email": settings.SALES_CONTACT_EMAIL,
            "message": "Enterprise plans are arranged with our sales team.",
        }
    if plan_type in (MANAGED_SERVICE_PLAN, MANAGED_SERVICE_SAVINGS_FEE_PLAN):
        raise ValidationError("Managed service fees are not purchased through request checkout")

    normalized_email = validate_email(email)
    request_ref = (request_id or "").strip()
    if not request_ref:
        raise ValidationError("Request ID is required")
    is_general = request_ref == GENERAL_REQUEST_REF
    if is_general and plan_type != EXTRA_CREDIT_PLAN:
        raise ValidationError("A request is required for this plan")

    pricing = await get_pricing(db)
    line_item = pricing.get(plan_type)
    if line_item is None:
        raise ValidationError("Invalid plan type")

    units = 1
    if plan_type == EXTRA_CREDIT_PLAN:
        units = int(quantity or 1)
        if units < 1 or units > MAX_TOP_UP_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_TOP_UP_QUANTITY}")

    report = None
    buyer_request = None
    if not is_general:
        if plan_type == EXTRA_CREDIT_PLAN:
            # A top-up may name a request that does not exist here yet.
            buyer_request = await db.get(BuyerRequest, request_ref)
        else:
            buyer_request = await get_buyer_request(db, request_ref)
    if buyer_request is not None:
        report = await ensure_match_report(db, buyer_request)
        paid = await db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.request_id == request_ref, PaymentRecord.status == "succeeded")
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        )
        existing = paid.scalars().first()
        if existing is not None:
            if await unlock_report(db, report, payment_record_id=existing.id):
                await db.commit()
            return {"already_unlocked": True, "request_id": request_ref, "status": report.status}

    if provider is None:
        raise ProviderNotConfigured()

    account = await get_account_by_email(db, normalized_email)
    verified = bool(account is not None and account.is_verified)
    success_url, cancel_url = _checkout_urls(request_ref, normalized_email, verified)
    access_token = generate_access_token(
        normalized_email,
        None if is_general else request_ref,
        PAYMENT_TOKEN,
    )

    price_data: Dict[str, Any] = {
        "currency": settings.CURRENCY,
        "product_data": {"name": line_item["name"], "description": line_item["description"] or line_item["name"]},
        "unit_amount": int(line_item["amount_cents"]),
    }
    if line_item["interval"]:
        price_data["recurring"] = {"interval": line_item["interval"]}

    params = {
        "mode": "subscription" if line_item["interval"] else "payment",
        "payment_method_types": ["card"],
        "customer_email": normalized_email,
        "client_reference_id": request_ref,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "line_items": [{"price_data": price_data, "quantity": units}],
        "metadata": {
            "requestId": request_ref,
            "matchReportId": report.id if report is not None else "",
            "planType": plan_type,
            "email": normalized_email,
            "accessToken": access_token,
            "isTopUp": "true" if plan_type == EXTRA_CREDIT_PLAN else "false",
            "quantity": str(units),
        },
    }

    try:
        session = await provider.create_checkout_session(params)
    except ProviderUnavailable as exc:
        logger.warning("Checkout session creation failed for request %s: %s", request_ref, exc.detail)
        raise ProviderUnavailable("Payment could not be completed. Please try again.") from exc

    record = PaymentRecord(
        request_id=None if is_general else request_ref,
        match_report_id=report.id if report is not None else None,
        email=normalized_email,
        provider_session_id=session.id,
        amount_cents=int(line_item["amount_cents"]) * units,
        currency=settings.CURRENCY,
        plan_type=plan_type,
        quantity=units if plan_type == EXTRA_CREDIT_PLAN else None,
        status="pending",
    )
    db.add(record)
    await db.commit()
    logger.info("Created checkout session %s (%s) for %s", session.id, plan_type, normalized_email)
    return {
        "session_id": session.id,
        "url": session.url,
        "payment_record_id": record.id,
        "plan_type": plan_type,
        "amount": record.amount,
    }
