from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, event
from sqlalchemy.dialects.postgresql import JSONB

from app.db.base import Base


class AuditLog(Base):
    """Append-only trail of ledger-affecting actions."""

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    actor_type = Column(String, nullable=False)  # user / admin / system
    actor_id = Column(String, nullable=True)
    action = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


@event.listens_for(AuditLog, "before_update")
def _reject_update(mapper, connection, target):
    raise RuntimeError("audit_logs is append-only")


@event.listens_for(AuditLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise RuntimeError("audit_logs is append-only")
