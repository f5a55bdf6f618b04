"""
CreditAllocation — one purchased or admin-granted batch of call credits.
Balance lives per allocation; the user's ledger is the sum of active rows.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, Text, UniqueConstraint

from app.db.base import Base


class CreditAllocation(Base):
    __tablename__ = "call_credit_allocations"
    __table_args__ = (
        UniqueConstraint("user_id", "plan_id", name="uq_call_credit_user_plan"),
        CheckConstraint("credits_remaining >= 0", name="ck_call_credit_remaining_non_negative"),
        CheckConstraint("credits_remaining <= credits_purchased", name="ck_call_credit_remaining_le_purchased"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=True)  # NULL = manual grant
    credits_purchased = Column(Integer, nullable=False)
    credits_remaining = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    admin_allocated = Column(Boolean, nullable=False, default=False)
    allocation_notes = Column(Text, nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
