"""Supplier model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class Supplier(Base):
    """Supplier directory entry scored against buyer requests."""

    __tablename__ = "suppliers"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    website = Column(String, nullable=True)
    category = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    location = Column(String, nullable=False, default="")
    certifications = Column(JSON, nullable=False, default=list)
    capabilities = Column(JSON, nullable=False, default=list)
    lead_time = Column(String, nullable=True)
    min_order_quantity = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
