"""Match report unlock gate: pending -> unlocked -> completed, plus access checks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from database import async_session_maker
from models.account import Account
from models.buyer_request import BuyerRequest
from models.match_report import MatchReport
from models.supplier import Supplier
from services.access_token import PAYMENT_TOKEN, verify_access_token
from services.errors import AccessDenied, InsufficientCredits, NotFoundError, ReconciliationError
from services.ledger import consume_credit
from services.matching import (
    MatchResult,
    RuleBasedMatchScorer,
    build_preview,
    build_supplier_entries,
    get_match_scorer,
    rank_suppliers,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def has_active_subscription(account: Optional[Account], now: Optional[datetime] = None) -> bool:
    if account is None or account.subscription_status != "active":
        return False
    expires_at = _as_aware(account.subscription_expires_at)
    return expires_at is None or expires_at > (now or _now())


async def get_buyer_request(db: AsyncSession, request_id: str) -> BuyerRequest:
    buyer_request = await db.get(BuyerRequest, request_id)
    if buyer_request is None:
        raise NotFoundError("Request not found")
    return buyer_request


async def get_report_for_request(db: AsyncSession, request_id: str) -> Optional[MatchReport]:
    result = await db.execute(select(MatchReport).where(MatchReport.request_id == request_id))
    return result.scalar_one_or_none()


async def _active_suppliers(db: AsyncSession) -> List[Supplier]:
    result = await db.execute(select(Supplier).where(Supplier.is_active.is_(True)))
    return list(result.scalars().all())


async def ensure_match_report(db: AsyncSession, buyer_request: BuyerRequest) -> MatchReport:
    """Return the request's report, creating a pending one with a rule-based preview.

    Creation commits on its own and resolves a concurrent insert by re-reading.
    """
    report = await get_report_for_request(db, buyer_request.id)
    if report is not None:
        return report

    ranking = await rank_suppliers(buyer_request, await _active_suppliers(db), RuleBasedMatchScorer())
    report = MatchReport(
        request_id=buyer_request.id,
        email=(buyer_request.email or "").strip().lower(),
        status="pending",
        preview_json=build_preview(buyer_request, ranking),
    )
    db.add(report)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        report = await get_report_for_request(db, buyer_request.id)
        if report is None:
            raise
    return report


async def unlock_report(
    db: AsyncSession,
    report: MatchReport,
    *,
    payment_record_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """pending -> unlocked. Returns False when the report was no longer pending.

    Does not commit; the caller pairs it with the payment or credit change.
    """
    moment = now or _now()
    values: Dict[str, Any] = {"status": "unlocked", "unlocked_at": moment}
    if payment_record_id:
        values["payment_record_id"] = payment_record_id
    result = await db.execute(
        update(MatchReport)
        .where(MatchReport.id == report.id, MatchReport.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    for key, value in values.items():
        set_committed_value(report, key, value)
    logger.info("Match report %s unlocked for request %s", report.id, report.request_id)
    return True


def is_report_owner(report: MatchReport, buyer_request: Optional[BuyerRequest], account: Optional[Account]) -> bool:
    if account is None:
        return False
    if buyer_request is not None and buyer_request.account_id and buyer_request.account_id == account.id:
        return True
    return bool(report.email) and report.email.lower() == (account.email or "").lower()


async def require_owned_report(db: AsyncSession, request_id: str, account: Account):
    buyer_request = await get_buyer_request(db, request_id)
    report = await ensure_match_report(db, buyer_request)
    if not is_report_owner(report, buyer_request, account):
        raise AccessDenied("You do not have access to this request")
    return buyer_request, report


async def unlock_with_credit(db: AsyncSession, account: Account, request_id: str) -> Dict[str, Any]:
    """Spend one credit to unlock a pending report; no charge if already unlocked."""
    _buyer_request, report = await require_owned_report(db, request_id, account)
    if report.status != "pending":
        return {"request_id": request_id, "status": report.status, "credits_used": 0, "balance": account.credit_balance}

    if int(account.credit_balance or 0) < 1:
        raise InsufficientCredits(required=1, available=int(account.credit_balance or 0))
    try:
        if not await unlock_report(db, report):
            await db.rollback()
            await db.refresh(report)
            await db.refresh(account)
            return {"request_id": request_id, "status": report.status, "credits_used": 0, "balance": account.credit_balance}
        await consume_credit(
            db,
            account,
            reason="unlock_request",
            request_id=request_id,
            match_report_id=report.id,
            notes="Report unlocked with credit",
        )
        await db.commit()
    except InsufficientCredits:
        await db.rollback()
        raise
    return {"request_id": request_id, "status": "unlocked", "credits_used": 1, "balance": account.credit_balance}


async def _score_request(db: AsyncSession, buyer_request: BuyerRequest, scorer=None) -> MatchResult:
    suppliers = await _active_suppliers(db)
    if not suppliers:
        raise NotFoundError("No suppliers available")
    result = await rank_suppliers(buyer_request, suppliers, scorer or get_match_scorer())
    if not result.ranked:
        raise NotFoundError("No matching suppliers found")
    return result


async def _complete_report(
    db: AsyncSession,
    report: MatchReport,
    buyer_request: BuyerRequest,
    result: MatchResult,
    *,
    from_status: str,
) -> bool:
    now = _now()
    values = {
        "status": "completed",
        "preview_json": build_preview(buyer_request, result),
        "suppliers_json": build_supplier_entries(result),
        "generated_at": now,
    }
    outcome = await db.execute(
        update(MatchReport)
        .where(MatchReport.id == report.id, MatchReport.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        return False
    for key, value in values.items():
        set_committed_value(report, key, value)
    buyer_request.status = "completed"
    return True


async def generate_report(db: AsyncSession, request_id: str, *, scorer=None) -> MatchReport:
    """unlocked -> completed. Completed reports are returned unchanged."""
    buyer_request = await get_buyer_request(db, request_id)
    report = await get_report_for_request(db, request_id)
    if report is None:
        raise NotFoundError("Match report not found")
    if report.status == "completed":
        return report
    if report.status != "unlocked":
        raise AccessDenied("Report is locked. Complete payment or use a credit to unlock it.")

    result = await _score_request(db, buyer_request, scorer)
    if not await _complete_report(db, report, buyer_request, result, from_status="unlocked"):
        await db.rollback()
        await db.refresh(report)
        return report
    await db.commit()
    logger.info("Generated match report %s (%d suppliers)", report.id, len(result.ranked))
    return report


async def process_matching(db: AsyncSession, account: Account, request_id: str, *, scorer=None) -> Dict[str, Any]:
    """Inline matching for an authenticated caller.

    Unlocked reports are generated without charge. Pending reports are
    generated for an active subscriber at the cost of one match credit;
    everyone else gets the preview.
    """
    buyer_request, report = await require_owned_report(db, request_id, account)
    if report.status == "completed":
        return {"request_id": request_id, "status": "completed", "credits_used": 0, "preview": report.preview_json}
    if report.status == "unlocked":
        report = await generate_report(db, request_id, scorer=scorer)
        return {"request_id": request_id, "status": report.status, "credits_used": 0, "preview": report.preview_json}

    if not has_active_subscription(account):
        return {
            "request_id": request_id,
            "status": "pending",
            "credits_used": 0,
            "requires_payment": True,
            "preview": report.preview_json,
        }
    if int(account.credit_balance or 0) < 1:
        raise InsufficientCredits(required=1, available=int(account.credit_balance or 0))

    result = await _score_request(db, buyer_request, scorer)
    try:
        if not await _complete_report(db, report, buyer_request, result, from_status="pending"):
            await db.rollback()
            await db.refresh(report)
            await db.refresh(account)
            return {"request_id": request_id, "status": report.status, "credits_used": 0, "preview": report.preview_json}
        await consume_credit(
            db,
            account,
            reason="match_generation",
            request_id=request_id,
            match_report_id=report.id,
            notes="AI match generation",
        )
        await db.commit()
    except InsufficientCredits:
        await db.rollback()
        raise
    logger.info("Inline match generation for request %s consumed one credit", request_id)
    return {"request_id": request_id, "status": "completed", "credits_used": 1, "preview": report.preview_json}


async def get_preview(db: AsyncSession, request_id: str) -> Dict[str, Any]:
    buyer_request = await get_buyer_request(db, request_id)
    report = await ensure_match_report(db, buyer_request)
    return {
        "request_id": request_id,
        "status": report.status,
        "preview": report.preview_json or {},
    }


def _supplier_detail(entry: Dict[str, Any], supplier: Optional[Supplier]) -> Dict[str, Any]:
    detail = dict(entry)
    if supplier is not None:
        detail.update(
            {
                "name": supplier.name,
                "location": supplier.location,
                "email": supplier.email,
                "phone": supplier.phone,
                "website": supplier.website,
                "certifications": supplier.certifications or [],
                "capabilities": supplier.capabilities or [],
                "lead_time": supplier.lead_time,
                "min_order_quantity": supplier.min_order_quantity,
                "description": supplier.description,
            }
        )
    return detail


async def get_full_report(
    db: AsyncSession,
    request_id: str,
    *,
    viewer: Optional[Account] = None,
    token: Optional[str] = None,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    """Full supplier detail for the owner or a holder of a valid payment token."""
    report = await get_report_for_request(db, request_id)
    if report is None:
        raise NotFoundError("Match report not found")
    if report.status not in ("unlocked", "completed"):
        raise AccessDenied("Full report is locked. Please complete payment to unlock.")

    buyer_request = await db.get(BuyerRequest, request_id)
    if not is_report_owner(report, buyer_request, viewer):
        if not token or not email:
            raise AccessDenied("Secure access link required. Please use the link from your email.")
        verification = verify_access_token(token, email, request_id, PAYMENT_TOKEN)
        if not verification.valid:
            raise AccessDenied(verification.error or "Invalid or expired access link.")
        if (report.email or "").lower() != verification.payload["email"]:
            raise AccessDenied("Access link does not match this report.")

    if report.status == "unlocked":
        return {
            "request_id": request_id,
            "status": "unlocked",
            "generation_pending": True,
            "preview": report.preview_json or {},
            "suppliers": [],
            "generated_at": None,
        }

    entries = list(report.suppliers_json or [])
    supplier_ids = [entry.get("supplier_id") for entry in entries if entry.get("supplier_id")]
    suppliers: Dict[str, Supplier] = {}
    if supplier_ids:
        result = await db.execute(select(Supplier).where(Supplier.id.in_(supplier_ids)))
        suppliers = {supplier.id: supplier for supplier in result.scalars().all()}

    return {
        "request_id": request_id,
        "status": "completed",
        "generation_pending": False,
        "preview": report.preview_json or {},
        "suppliers": [_supplier_detail(entry, suppliers.get(entry.get("supplier_id"))) for entry in entries],
        "generated_at": report.generated_at.isoformat() if report.generated_at else None,
    }


async def run_report_generation(request_id: str) -> Optional[str]:
    """Generate a report in its own session; failures are logged, not raised."""
    async with async_session_maker() as db:
        try:
            report = await generate_report(db, request_id)
        except ReconciliationError as exc:
            logger.warning("Report generation for request %s skipped: %s", request_id, exc.detail)
            return None
        return report.status


def generate_report_job(request_id: str) -> Optional[str]:
    """RQ entrypoint for background report generation."""
    return asyncio.run(run_report_generation(request_id))
