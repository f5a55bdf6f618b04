"""Provider budget: admin-editable cost settings and organization-wide usage."""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.budget_config import BudgetConfig
from app.models.call_session import CallSession
from app.services.audit.service import AuditService
from app.services.calls.status import CallStatus
from app.utils.clock import isoformat, month_start, utcnow

logger = logging.getLogger(__name__)


def billable_minutes(duration_seconds: int | None) -> int:
    """Provider bills started minutes: 0s -> 0, 1..60s -> 1, 61s -> 2."""
    seconds = max(int(duration_seconds or 0), 0)
    return (seconds + 59) // 60


def call_cost(duration_seconds: int | None, cost_per_minute: Decimal) -> Decimal:
    return (Decimal(billable_minutes(duration_seconds)) * Decimal(cost_per_minute)).quantize(Decimal("0.01"))


class BudgetSettingsService:
    """Singleton budget row (id=1). Read at the start of every operation that prices a call."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self) -> BudgetConfig | None:
        return self.db.query(BudgetConfig).filter(BudgetConfig.id == 1).first()

    def get_or_create(self) -> BudgetConfig:
        row = self.get()
        if row:
            return row
        row = BudgetConfig(
            id=1,
            total_credits=settings.default_budget_total_credits,
            cost_per_minute=Decimal(str(settings.default_budget_cost_per_minute)),
            monthly_limit=settings.default_budget_monthly_limit,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def as_dict(self) -> dict[str, Any]:
        row = self.get_or_create()
        return {
            "total_credits": row.total_credits,
            "cost_per_minute": float(row.cost_per_minute),
            "monthly_limit": row.monthly_limit,
            "updated_at": isoformat(row.updated_at),
        }

    def update(
        self,
        admin_id: str,
        total_credits: Any,
        cost_per_minute: Any,
        monthly_limit: Any,
    ) -> dict[str, Any]:
        """Validate (all strictly positive), persist and audit in one transaction."""
        try:
            total = int(total_credits)
            per_minute = Decimal(str(cost_per_minute))
            limit = int(monthly_limit)
        except (TypeError, ValueError, InvalidOperation):
            raise ValidationError("Total credits, cost per minute, and monthly limit are required")
        if total <= 0 or per_minute <= 0 or limit <= 0:
            raise ValidationError("All values must be positive")

        try:
            row = self.get_or_create()
            row.total_credits = total
            row.cost_per_minute = per_minute
            row.monthly_limit = limit
            row.updated_at = datetime.now(timezone.utc)
            self.db.add(row)
            AuditService(self.db).log(
                actor_type="admin",
                actor_id=admin_id,
                action="settings_update",
                entity_type="budget_config",
                entity_id="1",
                amount=total,
                reason=f"Updated budget settings: {total} credits, {per_minute}/min, {limit} monthly limit",
                payload={
                    "total_credits": total,
                    "cost_per_minute": str(per_minute),
                    "monthly_limit": limit,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("budget_settings_updated", extra={"admin_id": admin_id, "amount": total})
        return self.as_dict()


class BudgetTracker:
    """Read-only usage aggregation against the configured budget. Reporting only, never a gate."""

    def __init__(self, db: Session, settings_service: BudgetSettingsService | None = None) -> None:
        self.db = db
        self.settings_service = settings_service or BudgetSettingsService(db)

    def _billed_minutes(self, since: datetime | None = None) -> int:
        q = self.db.query(
            func.coalesce(func.sum((CallSession.duration_seconds + 59) // 60), 0)
        ).filter(
            CallSession.status == CallStatus.COMPLETED.value,
            CallSession.duration_seconds > 0,
        )
        if since is not None:
            q = q.filter(CallSession.created_at >= since)
        return int(q.scalar() or 0)

    def usage(self) -> dict[str, Any]:
        config = self.settings_service.get_or_create()
        per_minute = Decimal(config.cost_per_minute)
        used = Decimal(self._billed_minutes()) * per_minute
        current_month = Decimal(self._billed_minutes(since=month_start(utcnow()))) * per_minute
        remaining = max(Decimal(0), Decimal(config.total_credits) - used)
        return {
            "total_credits": config.total_credits,
            "used_credits": float(used),
            "remaining_credits": float(remaining),
            "cost_per_minute": float(per_minute),
            "monthly_limit": config.monthly_limit,
            "current_month_usage": float(current_month),
            "monthly_limit_exceeded": current_month > config.monthly_limit,
            "last_updated": isoformat(config.updated_at),
        }
