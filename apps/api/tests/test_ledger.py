import pytest
from sqlalchemy import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.errors import InsufficientCredits
from services.ledger import (
    consume_credit,
    get_credit_balance,
    get_credit_summary,
    get_ledger_delta,
    record_credit_change,
)
from fakes import seed_account


@pytest.mark.asyncio
async def test_credit_changes_write_matching_entries(db):
    account = await seed_account(db)

    added = await record_credit_change(db, account, delta=5, reason="top_up", notes="Purchased 5 extra credit(s)")
    await db.commit()
    spent = await consume_credit(db, account, reason="unlock_request", request_id="req-1")
    await db.commit()

    assert added.transaction_type == "added"
    assert (added.credits_before, added.credits_after, added.credits_used) == (0, 5, 5)
    assert spent.transaction_type == "deducted"
    assert (spent.credits_before, spent.credits_after, spent.credits_used) == (5, 4, 1)
    assert spent.request_id == "req-1"

    assert account.credit_balance == 4
    assert await get_credit_balance(account.id, db) == 4
    assert await get_ledger_delta(account.id, db) == 4


@pytest.mark.asyncio
async def test_allocation_may_lower_balance(db):
    account = await seed_account(db)
    await record_credit_change(db, account, delta=9, reason="top_up")
    entry = await record_credit_change(
        db, account, delta=-4, reason="subscription_allocation", transaction_type="added"
    )
    await db.commit()

    assert entry.transaction_type == "added"
    assert entry.credits_used == -4
    assert entry.signed_delta == -4
    assert await get_credit_balance(account.id, db) == 5
    assert await get_ledger_delta(account.id, db) == 5


@pytest.mark.asyncio
async def test_consume_without_credit_changes_nothing(db):
    account = await seed_account(db)

    with pytest.raises(InsufficientCredits) as exc_info:
        await consume_credit(db, account, reason="match_generation")
    assert exc_info.value.required == 1
    assert exc_info.value.available == 0
    assert exc_info.value.status_code == 400

    await db.rollback()
    entries = (await db.execute(select(CreditTransaction))).scalars().all()
    assert entries == []
    assert await get_credit_balance(account.id, db) == 0


@pytest.mark.asyncio
async def test_deduction_is_guarded_against_stale_balance(db, session_maker):
    account = await seed_account(db)
    account_id = account.id
    await record_credit_change(db, account, delta=1, reason="top_up")
    await db.commit()

    # Another writer spends the credit after `account` was loaded here.
    async with session_maker() as other:
        other_account = await other.get(Account, account_id)
        await consume_credit(other, other_account, reason="unlock_request")
        await other.commit()

    assert account.credit_balance == 1
    with pytest.raises(InsufficientCredits):
        await consume_credit(db, account, reason="unlock_request")
    await db.rollback()
    assert await get_credit_balance(account_id, db) == 0
    entries = await db.execute(select(CreditTransaction).where(CreditTransaction.account_id == account_id))
    assert len(entries.scalars().all()) == 2


@pytest.mark.asyncio
async def test_unknown_reason_rejected(db):
    account = await seed_account(db)
    with pytest.raises(ValueError):
        await record_credit_change(db, account, delta=1, reason="gift")


@pytest.mark.asyncio
async def test_credit_summary_lists_recent_entries(db):
    account = await seed_account(db)
    await record_credit_change(db, account, delta=3, reason="top_up")
    await db.commit()
    await consume_credit(db, account, reason="unlock_request")
    await db.commit()

    summary = await get_credit_summary(account, db, limit=10)

    assert summary["balance"] == 2
    assert summary["subscription_status"] == "none"
    assert len(summary["recent_entries"]) == 2
    assert {entry["reason"] for entry in summary["recent_entries"]} == {"top_up", "unlock_request"}
