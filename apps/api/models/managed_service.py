"""ManagedService model for concierge sourcing engagements."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


MANAGED_SERVICE_STAGES = (
    "payment_pending",
    "review",
    "rfq_prep",
    "supplier_outreach",
    "collecting_quotes",
    "negotiating",
    "report_ready",
    "final_report",
)


class ManagedService(Base):
    """Managed sourcing request paid through a service fee and an optional savings fee."""

    __tablename__ = "managed_services"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    email = Column(String, nullable=False, index=True)
    item_name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    urgency = Column(String, nullable=False, default="standard")

    status = Column(String, nullable=False, default="pending_payment")
    stage = Column(String, nullable=False, default="payment_pending")

    service_fee_amount_cents = Column(Integer, nullable=False, default=0)
    service_fee_status = Column(String, nullable=False, default="pending")
    service_fee_payment_id = Column(String, nullable=True)
    service_fee_paid_at = Column(DateTime(timezone=True), nullable=True)

    savings_fee_amount_cents = Column(Integer, nullable=True)
    savings_fee_status = Column(String, nullable=False, default="not_applicable")
    savings_fee_payment_id = Column(String, nullable=True)
    savings_fee_paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
