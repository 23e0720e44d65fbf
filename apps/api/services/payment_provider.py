"""Payment provider client (Stripe) with normalized session/event shapes.

The client is constructed explicitly from settings and handed to the
reconciliation engine; it never mutates the `stripe` module's global
configuration, so tests can substitute a fake implementation.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import stripe

from config import Settings, stripe_configured
from services.errors import NotFoundError, ProviderUnavailable, SignatureVerificationError

logger = logging.getLogger(__name__)


PAID_SESSION_STATUSES = ("paid", "no_payment_required")


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a Stripe object (or plain mapping) into nested plain dicts."""
    if obj is None:
        return {}
    for attr in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return dict(converter())
    return dict(obj)


def _metadata(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}


def object_id(value: Any) -> Optional[str]:
    """Expandable Stripe fields arrive either as an id string or an object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    customer_email: Optional[str] = None
    client_reference_id: Optional[str] = None
    amount_total: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_SESSION_STATUSES

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CheckoutSession":
        details = payload.get("customer_details") or {}
        return cls(
            id=str(payload.get("id") or ""),
            url=payload.get("url"),
            status=payload.get("status"),
            payment_status=payload.get("payment_status"),
            payment_intent=object_id(payload.get("payment_intent")),
            customer=object_id(payload.get("customer")),
            subscription=object_id(payload.get("subscription")),
            customer_email=payload.get("customer_email") or details.get("email"),
            client_reference_id=payload.get("client_reference_id"),
            amount_total=payload.get("amount_total"),
            metadata=_metadata(payload.get("metadata")),
        )


@dataclass
class ProviderEvent:
    id: str
    type: str
    data_object: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderEvent":
        data = payload.get("data") or {}
        return cls(
            id=str(payload.get("id") or ""),
            type=str(payload.get("type") or ""),
            data_object=dict(data.get("object") or {}),
        )


class PaymentProvider(ABC):
    """Operations the reconciliation core needs from the payment provider."""

    @abstractmethod
    def verify_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify the webhook signature and parse the event envelope."""

    @abstractmethod
    async def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession:
        ...

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        ...

    @abstractmethod
    async def find_paid_session(self, client_reference_id: str) -> Optional[CheckoutSession]:
        """Fallback lookup for records that never captured a session id."""

    @abstractmethod
    async def retrieve_payment_intent_status(self, payment_intent_id: str) -> str:
        ...

    @abstractmethod
    async def resolve_subscription_payment_intent(self, subscription_id: str) -> Optional[str]:
        """Payment intent of the subscription's latest invoice, if any."""


class StripePaymentProvider(PaymentProvider):
    def __init__(self, api_key: str, webhook_secret: str, timeout_seconds: float = 10.0):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = max(float(timeout_seconds), 1.0)

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Dict[str, Any]:
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Stripe call %s timed out after %.1fs", getattr(fn, "__qualname__", fn), self._timeout)
            raise ProviderUnavailable() from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise NotFoundError("Payment provider object not found") from exc
            logger.warning("Stripe rejected request: %s", exc)
            raise ProviderUnavailable() from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe call failed: %s", exc)
            raise ProviderUnavailable() from exc
        return _to_dict(result)

    def verify_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not self._webhook_secret:
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing webhook signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise SignatureVerificationError(f"Webhook Error: {exc}") from exc
        return ProviderEvent.from_payload(_to_dict(event))

    async def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession:
        payload = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession.from_payload(payload)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        payload = await self._call(stripe.checkout.Session.retrieve, session_id)
        return CheckoutSession.from_payload(payload)

    async def find_paid_session(self, client_reference_id: str) -> Optional[CheckoutSession]:
        # The list API cannot filter by client_reference_id; scan the most recent page.
        payload = await self._call(stripe.checkout.Session.list, limit=100)
        for item in payload.get("data") or []:
            session = CheckoutSession.from_payload(item)
            if session.client_reference_id == client_reference_id and session.is_paid:
                return session
        return None

    async def retrieve_payment_intent_status(self, payment_intent_id: str) -> str:
        payload = await self._call(stripe.PaymentIntent.retrieve, payment_intent_id)
        return str(payload.get("status") or "")

    async def resolve_subscription_payment_intent(self, subscription_id: str) -> Optional[str]:
        subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
        invoice_id = object_id(subscription.get("latest_invoice"))
        if not invoice_id:
            return None
        invoice = await self._call(stripe.Invoice.retrieve, invoice_id)
        return object_id(invoice.get("payment_intent"))


def build_payment_provider(config: Settings) -> Optional[PaymentProvider]:
    """Return a Stripe-backed provider, or None when Stripe is not configured."""
    if not stripe_configured():
        return None
    return StripePaymentProvider(
        api_key=config.STRIPE_SECRET_KEY,
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        timeout_seconds=config.STRIPE_API_TIMEOUT_SECONDS,
    )
