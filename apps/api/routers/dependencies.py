"""Injected collaborators for the payment and report routers."""

from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.notifier import Notifier, build_notifier
from services.payment_provider import PaymentProvider, build_payment_provider
from services.reconciliation import ReconciliationEngine
from services.report_queue import dispatch_report_generation


def get_payment_provider(request: Request) -> Optional[PaymentProvider]:
    """Provider client built at startup; built lazily if lifespan did not run."""
    if not hasattr(request.app.state, "payment_provider"):
        request.app.state.payment_provider = build_payment_provider(settings)
    return request.app.state.payment_provider


def get_report_dispatcher() -> Callable[[str], None]:
    return dispatch_report_generation


def get_notifier() -> Notifier:
    return build_notifier()


async def get_reconciliation_engine(
    db: AsyncSession = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
    dispatcher: Callable[[str], None] = Depends(get_report_dispatcher),
    notifier: Notifier = Depends(get_notifier),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, provider, dispatcher=dispatcher, notifier=notifier)
