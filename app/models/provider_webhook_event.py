from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from app.db.base import Base


class ProviderWebhookEvent(Base):
    """Every provider status callback as received; unprocessed rows need manual reconciliation."""

    __tablename__ = "provider_webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    call_sid = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=True)
    status = Column(String, nullable=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    error = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
