"""Payment reconciliation engine.

Webhook events, sync-one and sync-all all funnel into the same transition
procedure: locate (or reconstruct) the PaymentRecord, move it to its
provider-reported status, then claim and apply its entitlement side effects
exactly once. Side effects are claimed by setting `fulfilled_at` with a
compare-and-swap in the same transaction as the ledger writes, so replays
and racing reconcilers become no-ops instead of double grants.

A record that reached `succeeded` but whose side effects failed keeps
`fulfilled_at` empty; any later sync repairs it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from config import settings
from models.account import Account
from models.buyer_request import BuyerRequest
from models.managed_service import ManagedService
from models.match_report import MatchReport
from models.payment_record import PaymentRecord
from services.access_token import PAYMENT_TOKEN, VERIFICATION_TOKEN, generate_access_token
from services.accounts import get_or_create_account, normalize_email
from services.entitlements import (
    EXTRA_CREDIT_PLAN,
    MANAGED_SERVICE_PLAN,
    MANAGED_SERVICE_SAVINGS_FEE_PLAN,
    ONE_TIME_PLAN,
    is_subscription_plan,
    load_plan_terms,
    resolve_entitlement,
)
from services.errors import (
    NotFoundError,
    PartialReconciliationFailure,
    ProviderNotConfigured,
    ReconciliationError,
)
from services.ledger import consume_credit, record_credit_change
from services.notifier import Notifier
from services.payment_provider import CheckoutSession, PaymentProvider, ProviderEvent, object_id
from services.report_gate import ensure_match_report, unlock_report

logger = logging.getLogger(__name__)


PURPOSE_STANDARD = "standard"
PURPOSE_TOP_UP = "top_up"
PURPOSE_MANAGED_FEE = "managed_service_fee"
PURPOSE_SAVINGS_FEE = "managed_service_savings_fee"

GENERAL_REQUEST_REF = "general"


def classify_checkout(session: CheckoutSession) -> str:
    metadata = session.metadata
    kind = metadata.get("type")
    if kind == "managed_service":
        return PURPOSE_MANAGED_FEE
    if kind == "managed_service_savings_fee" or metadata.get("paymentType") == "savings_fee":
        return PURPOSE_SAVINGS_FEE
    if metadata.get("planType") == EXTRA_CREDIT_PLAN or metadata.get("isTopUp") == "true":
        return PURPOSE_TOP_UP
    return PURPOSE_STANDARD


def parse_quantity(value: Any) -> Optional[int]:
    try:
        quantity = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return quantity if quantity > 0 else None


def serialize_payment(record: PaymentRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "request_id": record.request_id,
        "email": record.email,
        "plan_type": record.plan_type,
        "status": record.status,
        "amount": record.amount,
        "amount_cents": record.amount_cents,
        "currency": record.currency,
        "quantity": record.quantity,
        "paid_at": record.paid_at.isoformat() if record.paid_at else None,
        "fulfilled": record.fulfilled_at is not None,
        "provider_session_id": record.provider_session_id,
    }


@dataclass
class ReconciliationResult:
    outcome: str
    message: str
    payment: Optional[Dict[str, Any]] = None
    subscription_updated: bool = False

    @property
    def already_processed(self) -> bool:
        return self.outcome == "already_processed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "message": self.message,
            "already_processed": self.already_processed,
            "subscription_updated": self.subscription_updated,
            "payment": self.payment,
        }


@dataclass
class _Fulfilment:
    record_id: str
    email: str
    request_id: Optional[str]
    plan_type: str
    account_verified: bool
    credits_added: int = 0
    subscription_updated: bool = False
    report_unlocked: bool = False


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription = object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


class ReconciliationEngine:
    """Applies provider payment state to accounts, credits and reports."""

    def __init__(
        self,
        db: AsyncSession,
        provider: Optional[PaymentProvider] = None,
        *,
        dispatcher: Optional[Callable[[str], None]] = None,
        notifier: Optional[Notifier] = None,
        unit_price_cents: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.provider = provider
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.unit_price_cents = int(unit_price_cents or settings.EXTRA_CREDIT_PRICE_CENTS)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None:
            raise ProviderNotConfigured()
        return self.provider

    # ------------------------------------------------------------------
    # Entry point 1: webhook
    # ------------------------------------------------------------------

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify and process one webhook delivery.

        Partial failures are acknowledged (the record is repairable through
        sync); anything else propagates so the provider retries.
        """
        event = self._require_provider().verify_event(payload, signature)
        logger.info("Received webhook event %s (%s)", event.id, event.type)
        try:
            result = await self.process_event(event)
        except PartialReconciliationFailure as exc:
            return {"received": True, "warning": exc.detail, "payment_record_id": exc.payment_record_id}
        return {"received": True, "outcome": result.outcome}

    async def process_event(self, event: ProviderEvent) -> ReconciliationResult:
        if event.type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return await self.handle_checkout_completed(CheckoutSession.from_payload(event.data_object))
        if event.type == "checkout.session.expired":
            return await self.handle_checkout_closed(CheckoutSession.from_payload(event.data_object), "canceled")
        if event.type == "checkout.session.async_payment_failed":
            return await self.handle_checkout_closed(CheckoutSession.from_payload(event.data_object), "failed")
        if event.type == "invoice.payment_succeeded":
            return await self.handle_invoice_paid(event.data_object)
        if event.type == "customer.subscription.deleted":
            return await self.handle_subscription_deleted(event.data_object)
        logger.debug("Ignoring webhook event type %s", event.type)
        return ReconciliationResult("ignored", f"Unhandled event type {event.type}")

    async def handle_checkout_completed(self, session: CheckoutSession) -> ReconciliationResult:
        purpose = classify_checkout(session)
        if purpose in (PURPOSE_MANAGED_FEE, PURPOSE_SAVINGS_FEE):
            return await self._apply_managed_service_fee(session, savings_fee=purpose == PURPOSE_SAVINGS_FEE)

        record = await self._locate_or_reconstruct(session, purpose)
        if record is None:
            logger.warning("Checkout session %s has no payment record and cannot be reconstructed", session.id)
            return ReconciliationResult("ignored", "Payment not found and could not be reconstructed")
        return await self._reconcile_session(record, session)

    async def handle_checkout_closed(self, session: CheckoutSession, status: str) -> ReconciliationResult:
        record = await self._find_by_session_id(session.id)
        if record is None:
            return ReconciliationResult("ignored", "Payment not found")
        reason = "Checkout session expired" if status == "canceled" else "Asynchronous payment failed"
        return await self._close_pending(record, status, reason)

    async def handle_invoice_paid(self, invoice: Mapping[str, Any]) -> ReconciliationResult:
        """Renewal invoices re-allocate credits for the subscriber's current plan."""
        invoice_id = invoice.get("id")
        subscription_id = _invoice_subscription_id(invoice)
        if not invoice_id or not subscription_id:
            return ReconciliationResult("ignored", "Invoice is not tied to a subscription")
        if invoice.get("billing_reason") == "subscription_create":
            return ReconciliationResult("ignored", "Initial subscription invoice is reconciled through checkout")

        record = await self._find_by_invoice_id(invoice_id)
        if record is None:
            account = await self._account_for_subscription(subscription_id, invoice.get("customer_email"))
            if account is None or not is_subscription_plan(account.subscription_plan):
                logger.warning("No subscriber found for renewal invoice %s (subscription %s)", invoice_id, subscription_id)
                return ReconciliationResult("ignored", "No subscriber found for invoice")
            record = PaymentRecord(
                email=account.email,
                plan_type=account.subscription_plan,
                amount_cents=int(invoice.get("amount_paid") or 0),
                currency=invoice.get("currency") or settings.CURRENCY,
                provider_invoice_id=invoice_id,
                provider_subscription_id=subscription_id,
                provider_customer_id=object_id(invoice.get("customer")),
                provider_payment_intent_id=object_id(invoice.get("payment_intent")),
                status="pending",
            )
            self.db.add(record)
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                record = await self._find_by_invoice_id(invoice_id)
                if record is None:
                    raise
        return await self._complete(record)

    async def handle_subscription_deleted(self, subscription: Mapping[str, Any]) -> ReconciliationResult:
        subscription_id = subscription.get("id")
        result = await self.db.execute(select(Account).where(Account.provider_subscription_id == subscription_id))
        account = result.scalars().first()
        if account is None:
            return ReconciliationResult("ignored", "No account for subscription")
        if account.subscription_status != "canceled":
            account.subscription_status = "canceled"
            await self.db.commit()
            logger.info("Subscription %s canceled for account %s", subscription_id, account.id)
        return ReconciliationResult("applied", "Subscription canceled", subscription_updated=True)

    # ------------------------------------------------------------------
    # Entry points 2 and 3: client-triggered sync
    # ------------------------------------------------------------------

    async def sync_request(self, request_id: str, email: str) -> ReconciliationResult:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.request_id == request_id, PaymentRecord.email == normalize_email(email))
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        )
        record = result.scalars().first()
        if record is None:
            raise NotFoundError("Payment not found")
        return await self._sync_record(record)

    async def sync_account(self, email: str) -> Dict[str, Any]:
        """Re-check every pending or partially applied record for an account."""
        result = await self.db.execute(
            select(PaymentRecord.id)
            .where(
                PaymentRecord.email == normalize_email(email),
                or_(
                    PaymentRecord.status == "pending",
                    and_(PaymentRecord.status == "succeeded", PaymentRecord.fulfilled_at.is_(None)),
                ),
            )
            .order_by(PaymentRecord.created_at)
        )
        record_ids = list(result.scalars().all())

        payments: List[Dict[str, Any]] = []
        warnings: List[str] = []
        synced = 0
        subscription_updated = False
        for record_id in record_ids:
            record = await self.db.get(PaymentRecord, record_id)
            if record is None:
                continue
            try:
                outcome = await self._sync_record(record)
            except ReconciliationError as exc:
                logger.warning("Sync of payment record %s did not complete: %s", record_id, exc.detail)
                warnings.append(f"{record_id}: {exc.detail}")
                continue
            if outcome.outcome == "applied":
                synced += 1
            subscription_updated = subscription_updated or outcome.subscription_updated
            payments.append(outcome.to_dict())

        return {
            "checked_count": len(record_ids),
            "synced_count": synced,
            "subscription_updated": subscription_updated,
            "warnings": warnings,
            "payments": payments,
        }

    async def _sync_record(self, record: PaymentRecord) -> ReconciliationResult:
        if record.status == "succeeded":
            if record.fulfilled_at is not None:
                return ReconciliationResult("already_processed", "Payment already processed", serialize_payment(record))
            logger.info("Repairing partially reconciled payment record %s", record.id)
            return await self._complete(record)
        if record.status in ("failed", "canceled"):
            return ReconciliationResult(record.status, f"Payment {record.status}", serialize_payment(record))

        provider = self._require_provider()
        if record.provider_session_id:
            session = await provider.retrieve_checkout_session(record.provider_session_id)
            return await self._reconcile_session(record, session)

        if record.provider_payment_intent_id:
            status = await provider.retrieve_payment_intent_status(record.provider_payment_intent_id)
            if status == "succeeded":
                return await self._complete(record)
            if status == "canceled":
                return await self._close_pending(record, "canceled", "Payment intent canceled")
        elif record.request_id:
            session = await provider.find_paid_session(record.request_id)
            if session is not None:
                owner = await self._find_by_session_id(session.id)
                if owner is None or owner.id == record.id:
                    return await self._reconcile_session(record, session)

        return ReconciliationResult("not_completed", "Payment not found or not completed", serialize_payment(record))

    # ------------------------------------------------------------------
    # Shared transition procedure
    # ------------------------------------------------------------------

    async def _find_by_session_id(self, session_id: Optional[str]) -> Optional[PaymentRecord]:
        if not session_id:
            return None
        result = await self.db.execute(select(PaymentRecord).where(PaymentRecord.provider_session_id == session_id))
        return result.scalars().first()

    async def _find_by_invoice_id(self, invoice_id: str) -> Optional[PaymentRecord]:
        result = await self.db.execute(select(PaymentRecord).where(PaymentRecord.provider_invoice_id == invoice_id))
        return result.scalars().first()

    async def _account_for_subscription(self, subscription_id: str, email: Optional[str]) -> Optional[Account]:
        result = await self.db.execute(select(Account).where(Account.provider_subscription_id == subscription_id))
        account = result.scalars().first()
        if account is None and email:
            result = await self.db.execute(select(Account).where(Account.email == normalize_email(email)))
            account = result.scalars().first()
        return account

    async def _locate_or_reconstruct(self, session: CheckoutSession, purpose: str) -> Optional[PaymentRecord]:
        """Session id first, then an unclaimed pending record for the request, then rebuild."""
        record = await self._find_by_session_id(session.id)
        if record is not None:
            return record

        reference = session.metadata.get("requestId") or session.client_reference_id
        plan_type = session.metadata.get("planType")
        if not plan_type and purpose == PURPOSE_TOP_UP:
            plan_type = EXTRA_CREDIT_PLAN
        if reference:
            stmt = select(PaymentRecord).where(
                PaymentRecord.provider_session_id.is_(None),
                PaymentRecord.status == "pending",
            )
            if reference == GENERAL_REQUEST_REF:
                stmt = stmt.where(PaymentRecord.request_id.is_(None))
            else:
                stmt = stmt.where(PaymentRecord.request_id == reference)
            if plan_type:
                stmt = stmt.where(PaymentRecord.plan_type == plan_type)
            email = normalize_email(session.customer_email or session.metadata.get("email"))
            if email:
                stmt = stmt.where(PaymentRecord.email == email)
            result = await self.db.execute(stmt.order_by(PaymentRecord.created_at.desc()).limit(1))
            record = result.scalars().first()
            if record is not None:
                record.provider_session_id = session.id
                logger.info("Linked session %s to payment record %s by request reference", session.id, record.id)
                return record

        return await self._reconstruct(session, reference, plan_type)

    async def _reconstruct(
        self,
        session: CheckoutSession,
        reference: Optional[str],
        plan_type: Optional[str],
    ) -> Optional[PaymentRecord]:
        request_id = reference if reference and reference != GENERAL_REQUEST_REF else None
        email = normalize_email(session.customer_email or session.metadata.get("email"))
        if request_id and not email:
            buyer_request = await self.db.get(BuyerRequest, request_id)
            if buyer_request is not None:
                email = normalize_email(buyer_request.email)
        if not email:
            return None

        match_report_id = session.metadata.get("matchReportId") or None
        if match_report_id and await self.db.get(MatchReport, match_report_id) is None:
            match_report_id = None

        record = PaymentRecord(
            request_id=request_id,
            match_report_id=match_report_id,
            email=email,
            provider_session_id=session.id,
            amount_cents=int(session.amount_total or 0),
            currency=settings.CURRENCY,
            plan_type=plan_type or ONE_TIME_PLAN,
            quantity=parse_quantity(session.metadata.get("quantity")),
            status="pending",
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return await self._find_by_session_id(session.id)
        logger.warning("Reconstructed payment record %s from provider session %s", record.id, session.id)
        return record

    def _enrich(self, record: PaymentRecord, session: CheckoutSession) -> None:
        if not record.provider_session_id:
            record.provider_session_id = session.id
        if session.payment_intent and not record.provider_payment_intent_id:
            record.provider_payment_intent_id = session.payment_intent
        if session.customer and not record.provider_customer_id:
            record.provider_customer_id = session.customer
        if session.subscription and not record.provider_subscription_id:
            record.provider_subscription_id = session.subscription

    async def _resolve_subscription_intent(self, record: PaymentRecord) -> None:
        if record.provider_payment_intent_id or not record.provider_subscription_id or self.provider is None:
            return
        try:
            record.provider_payment_intent_id = await self.provider.resolve_subscription_payment_intent(
                record.provider_subscription_id
            )
        except ReconciliationError as exc:
            logger.warning("Could not resolve payment intent for subscription %s: %s", record.provider_subscription_id, exc.detail)

    async def _reconcile_session(self, record: PaymentRecord, session: CheckoutSession) -> ReconciliationResult:
        self._enrich(record, session)
        if session.is_paid:
            await self._resolve_subscription_intent(record)

        if record.status in ("failed", "canceled"):
            if session.is_paid:
                logger.warning(
                    "Provider reports session %s paid but payment record %s is %s; leaving it terminal",
                    session.id,
                    record.id,
                    record.status,
                )
            await self.db.commit()
            return ReconciliationResult(record.status, f"Payment {record.status}", serialize_payment(record))

        if not session.is_paid:
            await self.db.commit()
            if session.is_expired:
                return await self._close_pending(record, "canceled", "Checkout session expired")
            return ReconciliationResult("not_completed", "Payment not found or not completed", serialize_payment(record))

        quantity = parse_quantity(session.metadata.get("quantity"))
        if quantity and record.plan_type == EXTRA_CREDIT_PLAN and not record.quantity:
            record.quantity = quantity
        return await self._complete(record, access_token=session.metadata.get("accessToken") or None)

    async def _close_pending(self, record: PaymentRecord, status: str, reason: str) -> ReconciliationResult:
        record_id = record.id
        result = await self.db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == record_id, PaymentRecord.status == "pending")
            .values(status=status, last_error=reason)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(record)
        if result.rowcount == 1:
            logger.info("Payment record %s marked %s: %s", record_id, status, reason)
            return ReconciliationResult(status, reason, serialize_payment(record))
        return ReconciliationResult(record.status, f"Payment {record.status}", serialize_payment(record))

    async def _complete(self, record: PaymentRecord, *, access_token: Optional[str] = None) -> ReconciliationResult:
        """Mark the record succeeded, then apply its side effects at most once."""
        record_id = record.id
        if record.status == "succeeded" and record.fulfilled_at is not None:
            await self.db.commit()
            return ReconciliationResult("already_processed", "Payment already processed", serialize_payment(record))

        if record.status == "pending":
            record.status = "succeeded"
            record.paid_at = record.paid_at or self._now()
            logger.info("Payment record %s marked succeeded (plan=%s)", record_id, record.plan_type)
        await self.db.commit()

        try:
            fulfilment = await self._fulfil(record)
        except Exception as exc:
            await self.db.rollback()
            logger.exception("Payment record %s succeeded but entitlement application failed", record_id)
            await self._note_failure(record_id, exc)
            raise PartialReconciliationFailure(
                record_id,
                "Payment saved but entitlement application failed. Run a payment sync to retry.",
            ) from exc

        if fulfilment is None:
            await self.db.refresh(record)
            return ReconciliationResult("already_processed", "Payment already processed", serialize_payment(record))

        await self._after_fulfilment(fulfilment, access_token)
        return ReconciliationResult(
            "applied",
            "Payment processed successfully",
            serialize_payment(record),
            subscription_updated=fulfilment.subscription_updated,
        )

    async def _note_failure(self, record_id: str, exc: Exception) -> None:
        try:
            await self.db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == record_id)
                .values(last_error=str(exc)[:500] or exc.__class__.__name__)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception("Could not record failure on payment record %s", record_id)

    async def _fulfil(self, record: PaymentRecord) -> Optional[_Fulfilment]:
        # Rows the side effects hang off are created (and committed) before the claim.
        account = await get_or_create_account(self.db, record.email)
        report: Optional[MatchReport] = None
        if record.request_id:
            buyer_request = await self.db.get(BuyerRequest, record.request_id)
            if buyer_request is not None:
                report = await ensure_match_report(self.db, buyer_request)
            else:
                logger.warning("Payment record %s references unknown request %s", record.id, record.request_id)

        now = self._now()
        claim = await self.db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == record.id, PaymentRecord.fulfilled_at.is_(None))
            .values(fulfilled_at=now, last_error=None)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            await self.db.rollback()
            logger.info("Payment record %s already fulfilled by a concurrent reconciler", record.id)
            return None
        set_committed_value(record, "fulfilled_at", now)
        set_committed_value(record, "last_error", None)

        fulfilment = _Fulfilment(
            record_id=record.id,
            email=record.email,
            request_id=record.request_id,
            plan_type=record.plan_type,
            account_verified=bool(account.is_verified),
        )
        if record.plan_type == EXTRA_CREDIT_PLAN:
            await self._apply_top_up(record, account, report, fulfilment, now)
        else:
            if is_subscription_plan(record.plan_type):
                await self._apply_subscription(record, account, fulfilment, now)
            if report is not None:
                fulfilment.report_unlocked = await unlock_report(
                    self.db, report, payment_record_id=record.id, now=now
                )
        if report is not None and not record.match_report_id:
            record.match_report_id = report.id

        await self.db.commit()
        logger.info(
            "Fulfilled payment record %s: credits=%+d subscription=%s unlocked=%s",
            record.id,
            fulfilment.credits_added,
            fulfilment.subscription_updated,
            fulfilment.report_unlocked,
        )
        return fulfilment

    async def _apply_subscription(
        self,
        record: PaymentRecord,
        account: Account,
        fulfilment: _Fulfilment,
        now: datetime,
    ) -> None:
        await self.db.refresh(account, ["credit_balance", "subscription_expires_at"])
        terms = await load_plan_terms(record.plan_type, self.db)
        entitlement = resolve_entitlement(
            record.plan_type,
            account.credit_balance,
            account.subscription_expires_at,
            terms=terms,
            now=now,
        )
        await record_credit_change(
            self.db,
            account,
            delta=entitlement.ledger_delta,
            reason="subscription_allocation",
            transaction_type="added",
            request_id=record.request_id,
            payment_record_id=record.id,
            notes=(
                f"{record.plan_type}: {entitlement.credits_granted} granted, "
                f"{entitlement.rollover_credits} rolled over"
            ),
        )
        account.subscription_status = "active"
        account.subscription_plan = record.plan_type
        account.subscription_expires_at = entitlement.new_expiry
        if record.provider_customer_id:
            account.provider_customer_id = record.provider_customer_id
        if record.provider_subscription_id:
            account.provider_subscription_id = record.provider_subscription_id
        fulfilment.credits_added = entitlement.ledger_delta
        fulfilment.subscription_updated = True

    async def _apply_top_up(
        self,
        record: PaymentRecord,
        account: Account,
        report: Optional[MatchReport],
        fulfilment: _Fulfilment,
        now: datetime,
    ) -> None:
        credits = record.quantity or (
            int(record.amount_cents or 0) // self.unit_price_cents if self.unit_price_cents > 0 else 0
        )
        if credits > 0:
            await record_credit_change(
                self.db,
                account,
                delta=credits,
                reason="top_up",
                request_id=record.request_id,
                match_report_id=report.id if report is not None else None,
                payment_record_id=record.id,
                notes=f"Purchased {credits} extra credit(s)",
            )
            record.quantity = credits
            fulfilment.credits_added = credits
        else:
            logger.warning("Top-up payment record %s carries no credit quantity", record.id)
            return

        if report is not None and report.status == "pending":
            if await unlock_report(self.db, report, payment_record_id=record.id, now=now):
                await consume_credit(
                    self.db,
                    account,
                    reason="unlock_request",
                    request_id=record.request_id,
                    match_report_id=report.id,
                    notes="Report unlocked with top-up credit",
                )
                fulfilment.credits_added -= 1
                fulfilment.report_unlocked = True

    async def _after_fulfilment(self, fulfilment: _Fulfilment, access_token: Optional[str]) -> None:
        """Best-effort hand-offs; neither may affect the payment outcome."""
        if fulfilment.report_unlocked and fulfilment.account_verified and fulfilment.request_id and self.dispatcher:
            try:
                self.dispatcher(fulfilment.request_id)
            except Exception:
                logger.exception("Report generation hand-off failed for request %s", fulfilment.request_id)

        if self.notifier is None:
            return
        try:
            token = access_token
            if token is None and fulfilment.request_id:
                token = generate_access_token(fulfilment.email, fulfilment.request_id, PAYMENT_TOKEN)
            verification_token = None
            if not fulfilment.account_verified:
                verification_token = generate_access_token(fulfilment.email, None, VERIFICATION_TOKEN)
            await self.notifier.payment_confirmed(
                email=fulfilment.email,
                request_id=fulfilment.request_id,
                plan_type=fulfilment.plan_type,
                access_token=token,
                verification_token=verification_token,
            )
        except Exception:
            logger.exception("Payment notification failed for %s", fulfilment.email)

    # ------------------------------------------------------------------
    # Managed service fees
    # ------------------------------------------------------------------

    async def _apply_managed_service_fee(self, session: CheckoutSession, *, savings_fee: bool) -> ReconciliationResult:
        existing = await self._find_by_session_id(session.id)
        if existing is not None and existing.status == "succeeded":
            return ReconciliationResult("already_processed", "Payment already processed", serialize_payment(existing))

        service_id = (
            session.metadata.get("managedServiceId")
            or session.metadata.get("requestId")
            or session.client_reference_id
        )
        service = await self.db.get(ManagedService, service_id) if service_id else None
        if service is None:
            logger.error("Managed service %s not found for checkout session %s", service_id, session.id)
            return ReconciliationResult("ignored", "Managed service not found")
        if not session.is_paid:
            return ReconciliationResult("not_completed", "Payment not found or not completed")

        email = normalize_email(session.customer_email or service.email)
        now = self._now()
        payment_ref = session.payment_intent or session.id
        if savings_fee:
            plan_type = MANAGED_SERVICE_SAVINGS_FEE_PLAN
            amount_cents = session.amount_total or service.savings_fee_amount_cents or 0
            pending_fee = ManagedService.savings_fee_status != "paid"
            values: Dict[str, Any] = {
                "savings_fee_status": "paid",
                "savings_fee_payment_id": payment_ref,
                "savings_fee_paid_at": now,
                "stage": "final_report",
            }
        else:
            account = await get_or_create_account(self.db, email)
            plan_type = MANAGED_SERVICE_PLAN
            amount_cents = session.amount_total or service.service_fee_amount_cents or 0
            pending_fee = ManagedService.service_fee_status != "paid"
            values = {
                "service_fee_status": "paid",
                "service_fee_payment_id": payment_ref,
                "service_fee_paid_at": now,
                "status": "in_progress",
                "account_id": account.id,
            }
            if service.stage == "payment_pending":
                values["stage"] = "review"

        changed = await self.db.execute(
            update(ManagedService)
            .where(ManagedService.id == service.id, pending_fee)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        record = existing or PaymentRecord(provider_session_id=session.id)
        record.managed_service_id = service.id
        record.email = email
        record.plan_type = plan_type
        record.amount_cents = int(amount_cents)
        record.currency = record.currency or settings.CURRENCY
        record.provider_payment_intent_id = record.provider_payment_intent_id or session.payment_intent
        record.provider_customer_id = record.provider_customer_id or session.customer
        record.status = "succeeded"
        record.paid_at = record.paid_at or now
        record.fulfilled_at = now
        if existing is None:
            self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Managed service payment for session %s recorded concurrently", session.id)
            existing = await self._find_by_session_id(session.id)
            return ReconciliationResult(
                "already_processed",
                "Payment already processed",
                serialize_payment(existing) if existing is not None else None,
            )

        logger.info(
            "Managed service %s %s paid (session %s)",
            service.id,
            "savings fee" if savings_fee else "service fee",
            session.id,
        )
        if changed.rowcount == 1 and self.notifier is not None:
            try:
                await self.notifier.managed_service_paid(
                    email=email,
                    managed_service_id=service.id,
                    savings_fee=savings_fee,
                )
            except Exception:
                logger.exception("Managed service notification failed for %s", email)
        return ReconciliationResult("applied", "Payment processed successfully", serialize_payment(record))
