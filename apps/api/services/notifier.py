"""Outbound customer notifications for payment and account events."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from config import settings

logger = logging.getLogger(__name__)

RESEND_EMAILS_URL = "https://api.resend.com/emails"


def dashboard_link(path: str, **params: Optional[str]) -> str:
    query = urlencode({k: v for k, v in params.items() if v})
    base = settings.CUSTOMER_DASHBOARD_URL.rstrip("/")
    return f"{base}{path}?{query}" if query else f"{base}{path}"


class Notifier:
    """Interface for delivering customer-facing messages."""

    async def payment_confirmed(
        self,
        *,
        email: str,
        request_id: Optional[str],
        plan_type: str,
        access_token: Optional[str],
        verification_token: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    async def managed_service_paid(self, *, email: str, managed_service_id: str, savings_fee: bool) -> None:
        raise NotImplementedError

    async def verification_requested(self, *, email: str, verification_token: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Composes each message and writes it to the application log."""

    async def deliver(self, email: str, subject: str, body: str) -> bool:
        logger.info("Notification for %s: %s | %s", email, subject, body)
        return True

    async def payment_confirmed(
        self,
        *,
        email: str,
        request_id: Optional[str],
        plan_type: str,
        access_token: Optional[str],
        verification_token: Optional[str] = None,
    ) -> None:
        if request_id:
            link = dashboard_link(f"/requests/{request_id}", token=access_token, email=email)
            body = f"Your payment ({plan_type}) was received. View your supplier matches: {link}"
        else:
            body = f"Your payment ({plan_type}) was received. Credits are available in your dashboard."
        await self.deliver(email, "Payment confirmed", body)
        if verification_token:
            await self.verification_requested(email=email, verification_token=verification_token)

    async def managed_service_paid(self, *, email: str, managed_service_id: str, savings_fee: bool) -> None:
        kind = "savings fee" if savings_fee else "service fee"
        link = dashboard_link(f"/managed-services/{managed_service_id}")
        await self.deliver(email, f"Managed service {kind} received", f"Track progress here: {link}")

    async def verification_requested(self, *, email: str, verification_token: str) -> None:
        link = dashboard_link("/verify-email", token=verification_token, email=email)
        await self.deliver(email, "Verify your email", f"Confirm your address: {link}")


class EmailNotifier(LoggingNotifier):
    """Sends the composed messages through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self.transport = transport

    async def deliver(self, email: str, subject: str, body: str) -> bool:
        payload = {"from": self.from_email, "to": [email], "subject": subject, "text": body}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    RESEND_EMAILS_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Email delivery to %s failed (%s): %s", email, subject, exc)
            return False
        return True


def build_notifier() -> Notifier:
    api_key = (settings.RESEND_API_KEY or "").strip()
    if not api_key:
        return LoggingNotifier()
    return EmailNotifier(api_key, settings.RESEND_FROM_EMAIL, timeout=settings.EMAIL_TIMEOUT_SECONDS)
