"""Credit ledger: balance mutations paired with append-only ledger entries."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import case, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from models.account import Account
from models.credit_transaction import TRANSACTION_REASONS, CreditTransaction
from services.errors import InsufficientCredits, NotFoundError


async def get_credit_balance(account_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(Account.credit_balance).where(Account.id == account_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError("Account not found")
    return int(balance)


async def get_ledger_delta(account_id: str, db: AsyncSession) -> int:
    """Sum of signed ledger changes for an account."""
    signed = case(
        (CreditTransaction.transaction_type == "added", CreditTransaction.credits_used),
        else_=-CreditTransaction.credits_used,
    )
    result = await db.execute(
        select(func.coalesce(func.sum(signed), 0)).where(CreditTransaction.account_id == account_id)
    )
    return int(result.scalar() or 0)


async def record_credit_change(
    db: AsyncSession,
    account: Account,
    *,
    delta: int,
    reason: str,
    transaction_type: Optional[str] = None,
    request_id: Optional[str] = None,
    match_report_id: Optional[str] = None,
    payment_record_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> CreditTransaction:
    """Apply `delta` to the account balance and append the matching ledger entry.

    The balance update and the ledger insert share the caller's transaction;
    nothing is committed here. The balance update is a single conditional
    UPDATE so a deduction can never drive the stored balance below zero, even
    when another writer changed it since `account` was loaded.

    Raises:
        InsufficientCredits: the deduction would make the balance negative.
    """
    delta = int(delta)
    if reason not in TRANSACTION_REASONS:
        raise ValueError(f"Unknown ledger reason: {reason}")

    entry_type = transaction_type or ("added" if delta >= 0 else "deducted")
    if entry_type != "added" and delta > 0:
        raise ValueError(f"{entry_type} entries must carry a non-positive delta")

    stmt = (
        update(Account)
        .where(Account.id == account.id, Account.credit_balance + delta >= 0)
        .values(credit_balance=Account.credit_balance + delta)
        .returning(Account.credit_balance)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    row = result.first()
    if row is None:
        available = await get_credit_balance(account.id, db)
        raise InsufficientCredits(required=-delta, available=available)

    credits_after = int(row[0])
    credits_before = credits_after - delta
    set_committed_value(account, "credit_balance", credits_after)

    entry = CreditTransaction(
        account_id=account.id,
        email=account.email,
        request_id=request_id,
        match_report_id=match_report_id,
        payment_record_id=payment_record_id,
        credits_used=delta if entry_type == "added" else -delta,
        credits_before=credits_before,
        credits_after=credits_after,
        transaction_type=entry_type,
        reason=reason,
        notes=notes,
    )
    db.add(entry)
    await db.flush()
    return entry


async def consume_credit(
    db: AsyncSession,
    account: Account,
    *,
    reason: str,
    request_id: Optional[str] = None,
    match_report_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> CreditTransaction:
    """Deduct exactly one credit (unlock or match generation)."""
    if int(account.credit_balance or 0) < 1:
        raise InsufficientCredits(required=1, available=int(account.credit_balance or 0))
    return await record_credit_change(
        db,
        account,
        delta=-1,
        reason=reason,
        request_id=request_id,
        match_report_id=match_report_id,
        notes=notes,
    )


def serialize_entry(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "transaction_type": entry.transaction_type,
        "reason": entry.reason,
        "credits_used": entry.credits_used,
        "credits_before": entry.credits_before,
        "credits_after": entry.credits_after,
        "request_id": entry.request_id,
        "notes": entry.notes,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(account: Account, db: AsyncSession, limit: int = 30) -> Dict[str, Any]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account.id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(limit)
    )
    entries = result.scalars().all()
    return {
        "balance": await get_credit_balance(account.id, db),
        "subscription_status": account.subscription_status,
        "subscription_plan": account.subscription_plan,
        "subscription_expires_at": (
            account.subscription_expires_at.isoformat() if account.subscription_expires_at else None
        ),
        "recent_entries": [serialize_entry(entry) for entry in entries],
    }
