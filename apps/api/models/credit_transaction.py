"""CreditTransaction model: append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = ("added", "deducted", "expired")
TRANSACTION_REASONS = (
    "subscription_allocation",
    "top_up",
    "match_generation",
    "unlock_request",
    "rollover",
)


class CreditTransaction(Base):
    """Immutable ledger entry written with every credit balance change."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=True, index=True)
    match_report_id = Column(String, nullable=True)
    payment_record_id = Column(String, nullable=True, index=True)
    credits_used = Column(Integer, nullable=False)
    credits_before = Column(Integer, nullable=False)
    credits_after = Column(Integer, nullable=False)
    transaction_type = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="credit_transactions")

    @property
    def signed_delta(self) -> int:
        """Balance change this entry explains."""
        if self.transaction_type == "added":
            return int(self.credits_used)
        return -int(self.credits_used)
