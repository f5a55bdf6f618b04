from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from app.db.base import Base


class CallSession(Base):
    __tablename__ = "call_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    caller_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)
    external_call_id = Column(String, unique=True, nullable=True)  # provider CallSid
    status = Column(String, nullable=False, default="initiated")
    duration_seconds = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    recording_url = Column(String, nullable=True)
    cost = Column(Numeric(10, 2), nullable=True)
    # Billing idempotency guards: set together with cost, exactly once
    caller_credits_deducted = Column(Boolean, nullable=False, default=False)
    receiver_credits_deducted = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_billed(self) -> bool:
        return bool(self.caller_credits_deducted or self.receiver_credits_deducted)
