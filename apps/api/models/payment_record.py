"""PaymentRecord model: one row per checkout attempt."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


PAYMENT_STATUSES = ("pending", "succeeded", "failed", "canceled")
TERMINAL_PAYMENT_STATUSES = ("succeeded", "failed", "canceled")


class PaymentRecord(Base):
    """Durable record of a checkout attempt, independent of the provider session object."""

    __tablename__ = "payment_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String, nullable=True, index=True)
    match_report_id = Column(String, ForeignKey("match_reports.id"), nullable=True, index=True)
    managed_service_id = Column(String, ForeignKey("managed_services.id"), nullable=True, index=True)
    email = Column(String, nullable=False, index=True)

    provider_session_id = Column(String, nullable=True, unique=True, index=True)
    provider_payment_intent_id = Column(String, nullable=True, index=True)
    provider_customer_id = Column(String, nullable=True)
    provider_subscription_id = Column(String, nullable=True)
    provider_invoice_id = Column(String, nullable=True, unique=True)

    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="usd")
    plan_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=True)

    status = Column(String, nullable=False, default="pending", index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def amount(self) -> float:
        return round((self.amount_cents or 0) / 100.0, 2)

    @property
    def needs_repair(self) -> bool:
        """Succeeded at the provider but entitlement side effects never committed."""
        return self.status == "succeeded" and self.fulfilled_at is None
