from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from app.db.base import Base


class Plan(Base):
    """Purchasable plan. Managed by the plans admin (out of this service); read here for call_credits."""

    __tablename__ = "plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    plan_type = Column(String, nullable=False, default="profile")  # profile / call
    call_credits = Column(Integer, nullable=False, default=0)
    duration_months = Column(Integer, nullable=False, default=3)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
