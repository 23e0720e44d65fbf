"""
Authentication router: email registration, verification and account state.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account
from routers.dependencies import get_notifier
from routers.rate_limit import rate_limit
from services.access_token import VERIFICATION_TOKEN, generate_access_token, verify_access_token
from services.accounts import get_account_by_email, get_or_create_account, validate_email
from services.notifier import Notifier
from services.session_token import create_session_token

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str


class RegisterResponse(BaseModel):
    account_id: str
    email: str
    is_verified: bool
    verification_sent: bool


class VerifyRequest(BaseModel):
    email: str
    token: str


class SessionResponse(BaseModel):
    account_id: str
    email: str
    session_token: str
    session_expires_at: int


class CurrentAccountResponse(BaseModel):
    account_id: str
    email: str
    is_verified: bool
    subscription_status: str
    subscription_plan: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None
    credit_balance: int


@router.post("/register", response_model=RegisterResponse)
async def register(
    request: RegisterRequest,
    _rate_limit: None = Depends(rate_limit("auth_register", limit=10, window_seconds=3600)),
    notifier: Notifier = Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    """Create (or look up) an account and send a verification link."""
    email = validate_email(request.email)
    account = await get_or_create_account(db, email)
    verification_sent = False
    if not account.is_verified:
        token = generate_access_token(email, None, VERIFICATION_TOKEN)
        await notifier.verification_requested(email=email, verification_token=token)
        verification_sent = True
    return RegisterResponse(
        account_id=account.id,
        email=account.email,
        is_verified=account.is_verified,
        verification_sent=verification_sent,
    )


@router.post("/verify", response_model=SessionResponse)
async def verify_email(request: VerifyRequest, db: AsyncSession = Depends(get_db)):
    """Exchange an email verification token for a session token."""
    email = validate_email(request.email)
    verification = verify_access_token(request.token, email, None, VERIFICATION_TOKEN)
    if not verification.valid:
        raise HTTPException(status_code=400, detail=verification.error or "Invalid verification link")

    account = await get_account_by_email(db, email)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    if not account.is_verified:
        account.is_verified = True
        await db.commit()

    session = create_session_token(account.id, account.email)
    return SessionResponse(
        account_id=account.id,
        email=account.email,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me", response_model=CurrentAccountResponse)
async def get_current_user(account: Account = Depends(get_current_account)):
    """Current account with subscription and credit state."""
    return CurrentAccountResponse(
        account_id=account.id,
        email=account.email,
        is_verified=account.is_verified,
        subscription_status=account.subscription_status,
        subscription_plan=account.subscription_plan,
        subscription_expires_at=account.subscription_expires_at,
        credit_balance=account.credit_balance,
    )
