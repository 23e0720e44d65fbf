"""MatchReport model for buyer request supplier matches."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


REPORT_STATUSES = ("pending", "unlocked", "completed")


class MatchReport(Base):
    """Preview plus full scored supplier list for one buyer request."""

    __tablename__ = "match_reports"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String, ForeignKey("buyer_requests.id"), nullable=False, unique=True, index=True)
    email = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="pending")
    preview_json = Column(JSON, nullable=True)
    suppliers_json = Column(JSON, nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=True)
    payment_record_id = Column(String, nullable=True)
    unlocked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    request = relationship("BuyerRequest", back_populates="match_report")
