import json
from unittest.mock import patch

import httpx
import pytest

from config import settings
from services.notifier import EmailNotifier, LoggingNotifier, build_notifier, dashboard_link


def test_dashboard_link_drops_empty_params():
    with patch.object(settings, "CUSTOMER_DASHBOARD_URL", "https://app.example/"):
        assert dashboard_link("/requests/r1", token="abc", email=None) == "https://app.example/requests/r1?token=abc"
        assert dashboard_link("/verify-email") == "https://app.example/verify-email"


def test_build_notifier_requires_api_key():
    with patch.object(settings, "RESEND_API_KEY", ""):
        assert type(build_notifier()) is LoggingNotifier
    with patch.object(settings, "RESEND_API_KEY", "re_live_key"):
        assert isinstance(build_notifier(), EmailNotifier)


@pytest.mark.asyncio
async def test_payment_confirmation_sends_report_link_and_verification():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.headers["Authorization"], json.loads(request.content)))
        return httpx.Response(200, json={"id": "email_1"})

    notifier = EmailNotifier("re_key", "noreply@test.example", transport=httpx.MockTransport(handler))
    await notifier.payment_confirmed(
        email="buyer@example.com",
        request_id="req-1",
        plan_type="one-time",
        access_token="tok",
        verification_token="verify-tok",
    )

    assert len(sent) == 2
    auth, first = sent[0]
    assert auth == "Bearer re_key"
    assert first["to"] == ["buyer@example.com"]
    assert first["subject"] == "Payment confirmed"
    assert "/requests/req-1?token=tok" in first["text"]
    assert sent[1][1]["subject"] == "Verify your email"


@pytest.mark.asyncio
async def test_delivery_failure_is_logged_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "down"})

    notifier = EmailNotifier("re_key", "noreply@test.example", transport=httpx.MockTransport(handler))
    assert await notifier.deliver("buyer@example.com", "Hello", "body") is False

    await notifier.managed_service_paid(email="buyer@example.com", managed_service_id="ms-1", savings_fee=True)
