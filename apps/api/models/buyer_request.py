"""BuyerRequest model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class BuyerRequest(Base):
    """A buyer's sourcing request that suppliers are matched against."""

    __tablename__ = "buyer_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    email = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    budget = Column(String, nullable=True)
    quantity = Column(String, nullable=True)
    timeline = Column(String, nullable=True)
    location = Column(String, nullable=True)
    requirements = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    match_report = relationship("MatchReport", back_populates="request", uselist=False)
