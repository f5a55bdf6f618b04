from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Numeric

from app.db.base import Base


class BudgetConfig(Base):
    """Provider budget settings (single row, id=1). Edited from admin only."""

    __tablename__ = "budget_config"

    id = Column(Integer, primary_key=True, default=1)
    total_credits = Column(Integer, nullable=False)
    cost_per_minute = Column(Numeric(10, 2), nullable=False)
    monthly_limit = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
