"""Account lookup helpers keyed by normalized email."""

from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from services.errors import ValidationError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def validate_email(value: Optional[str]) -> str:
    email = normalize_email(value)
    if not email or not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    return email


async def get_account_by_email(db: AsyncSession, email: str) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_or_create_account(db: AsyncSession, email: str, *, verified: bool = False) -> Account:
    """Return the account for `email`, creating it when absent.

    Creation commits on its own; callers must not have unrelated pending
    work in the session. A concurrent insert of the same email is resolved
    by re-reading the winner's row.
    """
    normalized = normalize_email(email)
    account = await get_account_by_email(db, normalized)
    if account is not None:
        if verified and not account.is_verified:
            account.is_verified = True
            await db.commit()
        return account

    account = Account(email=normalized, is_verified=verified, credit_balance=0, subscription_status="none")
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Account for %s created concurrently; using existing row", normalized)
        account = await get_account_by_email(db, normalized)
        if account is None:
            raise
        return account
    logger.info("Created account %s for %s", account.id, normalized)
    return account
