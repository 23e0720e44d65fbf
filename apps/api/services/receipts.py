"""Receipts for an account's settled payments."""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.buyer_request import BuyerRequest
from models.managed_service import ManagedService
from models.match_report import MatchReport
from models.payment_record import PaymentRecord
from services.entitlements import (
    EXTRA_CREDIT_PLAN,
    MANAGED_SERVICE_PLAN,
    MANAGED_SERVICE_SAVINGS_FEE_PLAN,
    is_subscription_plan,
)
from services.errors import NotFoundError


def receipt_type(plan_type: str) -> str:
    if plan_type == EXTRA_CREDIT_PLAN:
        return "top_up"
    if plan_type in (MANAGED_SERVICE_PLAN, MANAGED_SERVICE_SAVINGS_FEE_PLAN):
        return plan_type
    if is_subscription_plan(plan_type):
        return "subscription"
    return "match_report"


def _owned_receipts(account: Account, *columns):
    # Managed-service payments may have been made from another address; the service owner still sees them.
    return (
        select(*(columns or (PaymentRecord, ManagedService)))
        .select_from(PaymentRecord)
        .outerjoin(ManagedService, PaymentRecord.managed_service_id == ManagedService.id)
        .where(
            PaymentRecord.status == "succeeded",
            or_(
                PaymentRecord.email == account.email,
                ManagedService.email == account.email,
                ManagedService.account_id == account.id,
            ),
        )
    )


def serialize_receipt(
    record: PaymentRecord,
    service: Optional[ManagedService] = None,
    buyer_request: Optional[BuyerRequest] = None,
    report: Optional[MatchReport] = None,
) -> Dict[str, Any]:
    paid_at = record.paid_at or record.created_at
    receipt: Dict[str, Any] = {
        "id": record.id,
        "type": receipt_type(record.plan_type),
        "plan_type": record.plan_type,
        "amount": record.amount,
        "currency": record.currency or "usd",
        "paid_at": paid_at.isoformat() if paid_at else None,
        "provider_payment_intent_id": record.provider_payment_intent_id,
    }
    if record.plan_type == EXTRA_CREDIT_PLAN:
        credits = record.quantity or 0
        receipt["credits"] = credits
        receipt["description"] = f"Top-up: {credits} credit{'s' if credits != 1 else ''}"
    if service is not None:
        receipt["service"] = {"id": service.id, "item_name": service.item_name, "category": service.category}
    elif record.request_id:
        receipt["request"] = {
            "id": record.request_id,
            "category": buyer_request.category if buyer_request is not None else None,
        }
    if report is not None:
        receipt["match_report"] = {"id": report.id, "status": report.status}
    return receipt


async def list_receipts(db: AsyncSession, account: Account, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Newest first, paginated."""
    total = (await db.execute(_owned_receipts(account, func.count(PaymentRecord.id)))).scalar_one()

    paid_order = func.coalesce(PaymentRecord.paid_at, PaymentRecord.created_at)
    result = await db.execute(
        _owned_receipts(account).order_by(paid_order.desc(), PaymentRecord.id).offset((page - 1) * limit).limit(limit)
    )
    rows = result.all()

    request_ids = {record.request_id for record, _service in rows if record.request_id}
    requests: Dict[str, BuyerRequest] = {}
    if request_ids:
        found = await db.execute(select(BuyerRequest).where(BuyerRequest.id.in_(request_ids)))
        requests = {item.id: item for item in found.scalars().all()}

    return {
        "receipts": [
            serialize_receipt(record, service, requests.get(record.request_id or ""))
            for record, service in rows
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


async def get_receipt(db: AsyncSession, account: Account, payment_record_id: str) -> Dict[str, Any]:
    result = await db.execute(_owned_receipts(account).where(PaymentRecord.id == payment_record_id))
    row = result.first()
    if row is None:
        raise NotFoundError("Receipt not found or access denied")
    record, service = row

    buyer_request = await db.get(BuyerRequest, record.request_id) if record.request_id else None
    report = await db.get(MatchReport, record.match_report_id) if record.match_report_id else None
    return serialize_receipt(record, service, buyer_request, report)
