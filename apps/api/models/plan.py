"""Plan catalog model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class Plan(Base):
    """Pricing plan family (basic/starter/professional)."""

    __tablename__ = "plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    plan_type = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)
    has_annual_pricing = Column(Boolean, nullable=False, default=False)
    annual_price_cents = Column(Integer, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    max_rollover_credits = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
