"""In-memory collaborators and seed helpers shared by the payment tests."""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models.account import Account
from models.buyer_request import BuyerRequest
from models.plan import Plan
from models.supplier import Supplier
from services.errors import NotFoundError, ProviderUnavailable, SignatureVerificationError
from services.notifier import Notifier
from services.payment_provider import CheckoutSession, PaymentProvider, ProviderEvent

WEBHOOK_SECRET = "whsec_test"


class FakePaymentProvider(PaymentProvider):
    """Checkout sessions, payment intents and subscriptions held in dicts."""

    def __init__(self, secret: str = WEBHOOK_SECRET):
        self.secret = secret
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.payment_intents: Dict[str, str] = {}
        self.subscription_intents: Dict[str, str] = {}
        self.created: List[Dict[str, Any]] = []
        self.unavailable = False
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def event(self, event_type: str, data_object: Dict[str, Any]):
        """Return (payload, signature) for a webhook delivery."""
        payload = json.dumps(
            {"id": self._next_id("evt"), "type": event_type, "data": {"object": data_object}}
        ).encode("utf-8")
        return payload, self.sign(payload)

    def add_session(self, **fields: Any) -> Dict[str, Any]:
        session = {
            "id": fields.pop("id", None) or self._next_id("cs"),
            "url": None,
            "status": "open",
            "payment_status": "unpaid",
            "payment_intent": None,
            "customer": None,
            "subscription": None,
            "customer_email": None,
            "client_reference_id": None,
            "amount_total": 0,
            "metadata": {},
        }
        session.update(fields)
        self.sessions[session["id"]] = session
        return session

    def pay(self, session_id: str, **fields: Any) -> Dict[str, Any]:
        session = self.sessions[session_id]
        session.update({"status": "complete", "payment_status": "paid"})
        if session.get("payment_intent") is None and "subscription" not in fields:
            session["payment_intent"] = self._next_id("pi")
        session.update(fields)
        if session.get("payment_intent"):
            self.payment_intents[session["payment_intent"]] = "succeeded"
        return session

    def expire(self, session_id: str) -> Dict[str, Any]:
        session = self.sessions[session_id]
        session["status"] = "expired"
        return session

    def verify_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not signature or not hmac.compare_digest(signature, self.sign(payload)):
            raise SignatureVerificationError("Webhook Error: signature mismatch")
        return ProviderEvent.from_payload(json.loads(payload))

    async def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession:
        if self.unavailable:
            raise ProviderUnavailable()
        self.created.append(params)
        amount = sum(
            item["price_data"]["unit_amount"] * item["quantity"] for item in params.get("line_items", [])
        )
        session = self.add_session(
            customer_email=params.get("customer_email"),
            client_reference_id=params.get("client_reference_id"),
            amount_total=amount,
            metadata=dict(params.get("metadata") or {}),
        )
        session["url"] = f"https://checkout.test/{session['id']}"
        return CheckoutSession.from_payload(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        if self.unavailable:
            raise ProviderUnavailable()
        if session_id not in self.sessions:
            raise NotFoundError("Payment provider object not found")
        return CheckoutSession.from_payload(self.sessions[session_id])

    async def find_paid_session(self, client_reference_id: str) -> Optional[CheckoutSession]:
        for payload in self.sessions.values():
            session = CheckoutSession.from_payload(payload)
            if session.client_reference_id == client_reference_id and session.is_paid:
                return session
        return None

    async def retrieve_payment_intent_status(self, payment_intent_id: str) -> str:
        return self.payment_intents.get(payment_intent_id, "requires_payment_method")

    async def resolve_subscription_payment_intent(self, subscription_id: str) -> Optional[str]:
        return self.subscription_intents.get(subscription_id)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.payments: List[Dict[str, Any]] = []
        self.managed: List[Dict[str, Any]] = []
        self.verifications: List[Dict[str, Any]] = []

    async def payment_confirmed(self, **kwargs: Any) -> None:
        self.payments.append(kwargs)

    async def managed_service_paid(self, **kwargs: Any) -> None:
        self.managed.append(kwargs)

    async def verification_requested(self, **kwargs: Any) -> None:
        self.verifications.append(kwargs)


class RecordingDispatcher:
    def __init__(self):
        self.dispatched: List[str] = []

    def __call__(self, request_id: str) -> None:
        self.dispatched.append(request_id)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back without tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def seed_catalog(db) -> None:
    db.add_all(
        [
            Plan(plan_type="basic", name="Basic", price_cents=4900, credits=1, max_rollover_credits=0, display_order=1),
            Plan(
                plan_type="starter",
                name="Starter",
                price_cents=7900,
                has_annual_pricing=True,
                annual_price_cents=86900,
                credits=5,
                max_rollover_credits=0,
                display_order=2,
            ),
            Plan(
                plan_type="professional",
                name="Professional",
                price_cents=19900,
                has_annual_pricing=True,
                annual_price_cents=218900,
                credits=15,
                max_rollover_credits=3,
                display_order=3,
            ),
        ]
    )
    await db.commit()


async def seed_supplier(db, **fields: Any) -> Supplier:
    values = {
        "name": "Lone Star Packaging",
        "email": "sales@lonestarpack.example",
        "phone": "+1-512-555-0100",
        "website": "https://lonestarpack.example",
        "category": "packaging",
        "description": "custom corrugated boxes and printed mailers",
        "location": "Austin, TX",
        "certifications": ["FSC"],
        "capabilities": ["printing", "die cutting"],
        "lead_time": "2-3 weeks",
    }
    values.update(fields)
    supplier = Supplier(**values)
    db.add(supplier)
    await db.commit()
    return supplier


async def seed_request(db, email: str = "buyer@example.com", **fields: Any) -> BuyerRequest:
    values = {
        "email": email,
        "category": "packaging",
        "description": "Need custom corrugated boxes printed with our logo",
        "location": "Austin, TX",
        "requirements": "FSC certified material",
    }
    values.update(fields)
    buyer_request = BuyerRequest(**values)
    db.add(buyer_request)
    await db.commit()
    return buyer_request


async def seed_account(db, email: str = "buyer@example.com", **fields: Any) -> Account:
    values = {
        "email": email,
        "is_verified": True,
        "credit_balance": 0,
        "subscription_status": "none",
    }
    values.update(fields)
    account = Account(**values)
    db.add(account)
    await db.commit()
    return account
