"""
CreditLedgerService — the single authority over call credit balances.

Responsibilities:
- Allocation (verified payments, admin grants) with top-up of an existing plan row
- Exactly-once-friendly deduction: soonest-expiring allocations consumed first,
  rows locked for the duration of the caller's transaction
- Read models: active balance, /credits/me status, admin distributions
- Manual admin adjustments (add/remove/set)

Methods flush but never commit. The caller owns the transaction so that a
balance change, its audit entry and any companion flag (e.g. a call session's
billing flags) are committed or rolled back as one unit.
"""
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AllocationError, InsufficientCreditsError, ValidationError
from app.models.call_credit import CreditAllocation
from app.models.call_session import CallSession
from app.models.plan import Plan
from app.models.user import User
from app.services.audit.service import AuditService
from app.utils.clock import add_months, ensure_utc, isoformat, utcnow
from app.utils.metrics import credit_operations_total, insufficient_credits_total

logger = logging.getLogger(__name__)

ADJUST_ACTIONS = ("add", "remove", "set")


class BalanceSummary(BaseModel):
    remaining: int
    purchased: int
    next_expiry: datetime | None = None

    model_config = {"frozen": True}


class DeductionResult(BaseModel):
    user_id: str
    amount: int
    balance_after: int
    # (allocation_id, credits taken) in consumption order
    consumed: list[tuple[str, int]]

    model_config = {"frozen": True}


class AdjustmentResult(BaseModel):
    allocation_id: str
    action: str
    credits: int
    old_balance: int
    new_balance: int

    model_config = {"frozen": True}


class CreditLedgerService:
    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        user_id: str,
        plan_id: str | None,
        credits_to_add: int,
        validity_months: int | None = None,
        *,
        actor_type: str = "admin",
        actor_id: str | None = None,
        reason: str | None = None,
        admin_allocated: bool = False,
        notes: str | None = None,
    ) -> str:
        """
        Top up the user's allocation for plan_id, or create one.
        Manual grants (plan_id=None) always create a separate admin-allocated row.
        Returns the allocation id.
        """
        if credits_to_add is None or int(credits_to_add) <= 0:
            raise AllocationError("credits_to_add must be positive", user_id=user_id)
        credits_to_add = int(credits_to_add)
        months = validity_months if validity_months is not None else settings.credit_validity_months
        now = utcnow()
        expires_at = add_months(now, months)

        allocation = None
        if plan_id is not None:
            allocation = (
                self.db.query(CreditAllocation)
                .filter(
                    CreditAllocation.user_id == user_id,
                    CreditAllocation.plan_id == plan_id,
                )
                .with_for_update()
                .one_or_none()
            )

        if allocation is not None:
            allocation.credits_purchased += credits_to_add
            allocation.credits_remaining += credits_to_add
            allocation.expires_at = expires_at
            allocation.updated_at = now
            topped_up = True
        else:
            allocation = CreditAllocation(
                user_id=user_id,
                plan_id=plan_id,
                credits_purchased=credits_to_add,
                credits_remaining=credits_to_add,
                expires_at=expires_at,
                admin_allocated=admin_allocated or plan_id is None,
                allocation_notes=notes,
            )
            topped_up = False
        self.db.add(allocation)
        self.db.flush()

        self.audit.log(
            actor_type=actor_type,
            actor_id=actor_id,
            action="allocated",
            entity_type="credit_allocation",
            entity_id=allocation.id,
            amount=credits_to_add,
            reason=reason,
            payload={"user_id": user_id, "plan_id": plan_id, "topped_up": topped_up},
        )
        credit_operations_total.labels(operation="allocate").inc()
        logger.info(
            "credits_allocated",
            extra={
                "user_id": user_id,
                "plan_id": plan_id,
                "allocation_id": allocation.id,
                "amount": credits_to_add,
            },
        )
        return allocation.id

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    def _active_query(self, user_id: str, now: datetime):
        return self.db.query(CreditAllocation).filter(
            CreditAllocation.user_id == user_id,
            CreditAllocation.expires_at > now,
        )

    def total_active_balance(self, user_id: str) -> BalanceSummary:
        now = utcnow()
        remaining, purchased, next_expiry = (
            self.db.query(
                func.coalesce(func.sum(CreditAllocation.credits_remaining), 0),
                func.coalesce(func.sum(CreditAllocation.credits_purchased), 0),
                func.min(CreditAllocation.expires_at),
            )
            .filter(
                CreditAllocation.user_id == user_id,
                CreditAllocation.expires_at > now,
            )
            .one()
        )
        return BalanceSummary(
            remaining=int(remaining or 0),
            purchased=int(purchased or 0),
            next_expiry=ensure_utc(next_expiry),
        )

    def has_active_credits(self, user_id: str) -> bool:
        now = utcnow()
        return (
            self._active_query(user_id, now)
            .filter(CreditAllocation.credits_remaining > 0)
            .first()
            is not None
        )

    # ------------------------------------------------------------------
    # Deduction
    # ------------------------------------------------------------------

    def deduct(
        self,
        user_id: str,
        amount: int,
        *,
        session_id: str | None = None,
        actor_type: str = "system",
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> DeductionResult:
        """
        Consume `amount` credits, soonest-expiring allocation first.
        Raises InsufficientCreditsError before touching any row if the active balance is short.
        """
        if amount is None or int(amount) <= 0:
            raise ValidationError("amount must be positive", user_id=user_id)
        amount = int(amount)
        now = utcnow()

        rows = (
            self._active_query(user_id, now)
            .filter(CreditAllocation.credits_remaining > 0)
            .order_by(CreditAllocation.expires_at.asc(), CreditAllocation.created_at.asc())
            .with_for_update()
            .all()
        )
        available = sum(row.credits_remaining for row in rows)
        if available < amount:
            insufficient_credits_total.inc()
            raise InsufficientCreditsError(user_id, amount, available)

        left = amount
        consumed: list[tuple[str, int]] = []
        for row in rows:
            take = min(row.credits_remaining, left)
            row.credits_remaining -= take
            row.last_used_at = now
            row.updated_at = now
            self.db.add(row)
            consumed.append((row.id, take))
            left -= take
            if left == 0:
                break
        self.db.flush()

        self.audit.log(
            actor_type=actor_type,
            actor_id=actor_id,
            action="deducted",
            entity_type="call_session" if session_id else "user",
            entity_id=session_id or user_id,
            amount=amount,
            reason=reason,
            payload={"user_id": user_id, "consumed": [list(c) for c in consumed]},
        )
        credit_operations_total.labels(operation="deduct").inc()
        logger.info(
            "credits_deducted",
            extra={
                "user_id": user_id,
                "session_id": session_id,
                "amount": amount,
                "available": available - amount,
            },
        )
        return DeductionResult(
            user_id=user_id,
            amount=amount,
            balance_after=available - amount,
            consumed=consumed,
        )

    # ------------------------------------------------------------------
    # Admin adjustment
    # ------------------------------------------------------------------

    def adjust(
        self,
        user_id: str,
        action: str,
        credits: int,
        reason: str,
        admin_id: str,
    ) -> AdjustmentResult:
        """Manual add/remove/set against the user's latest-expiring active allocation."""
        if action not in ADJUST_ACTIONS:
            raise ValidationError(f"Invalid action: {action}")
        if credits is None or int(credits) <= 0:
            raise ValidationError("Credits must be positive")
        if not reason or not reason.strip():
            raise ValidationError("Reason is required")
        credits = int(credits)
        now = utcnow()

        current = (
            self._active_query(user_id, now)
            .order_by(CreditAllocation.expires_at.desc())
            .with_for_update()
            .first()
        )
        if current is None and action != "add":
            raise ValidationError("User has no active credit allocation", user_id=user_id)

        if current is None:
            allocation_id = self.allocate(
                user_id,
                None,
                credits,
                actor_id=admin_id,
                reason=reason,
                admin_allocated=True,
                notes=reason,
            )
            old_balance, new_balance = 0, credits
        else:
            allocation_id = current.id
            old_balance = current.credits_remaining
            if action == "add":
                current.credits_purchased += credits
                current.credits_remaining += credits
            elif action == "remove":
                if credits > current.credits_remaining:
                    raise ValidationError(
                        f"Cannot remove {credits} credits. User only has {current.credits_remaining} remaining."
                    )
                current.credits_remaining -= credits
            else:
                if credits > current.credits_purchased:
                    raise ValidationError(
                        f"Cannot set {credits} credits. Allocation was purchased with {current.credits_purchased}."
                    )
                current.credits_remaining = credits
            current.updated_at = now
            new_balance = current.credits_remaining
            self.db.add(current)
            self.db.flush()

        self.audit.log(
            actor_type="admin",
            actor_id=admin_id,
            action=f"manual_{action}",
            entity_type="credit_allocation",
            entity_id=allocation_id,
            amount=credits,
            reason=reason,
            payload={"user_id": user_id, "old_balance": old_balance, "new_balance": new_balance},
        )
        credit_operations_total.labels(operation=f"manual_{action}").inc()
        logger.info(
            "credits_adjusted",
            extra={
                "user_id": user_id,
                "admin_id": admin_id,
                "action": action,
                "amount": credits,
                "allocation_id": allocation_id,
            },
        )
        return AdjustmentResult(
            allocation_id=allocation_id,
            action=action,
            credits=credits,
            old_balance=old_balance,
            new_balance=new_balance,
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def credit_status(self, user_id: str) -> dict[str, Any]:
        """Payload for GET /credits/me."""
        now = utcnow()
        rows = (
            self.db.query(CreditAllocation, Plan.name)
            .outerjoin(Plan, Plan.id == CreditAllocation.plan_id)
            .filter(
                CreditAllocation.user_id == user_id,
                CreditAllocation.expires_at > now,
            )
            .order_by(CreditAllocation.expires_at.asc())
            .all()
        )
        total_remaining = sum(a.credits_remaining for a, _ in rows)
        total_purchased = sum(a.credits_purchased for a, _ in rows)
        return {
            "canMakeCalls": total_remaining > 0,
            "totalRemaining": total_remaining,
            "totalPurchased": total_purchased,
            "creditsUsed": total_purchased - total_remaining,
            "activeAllocations": len(rows),
            "nextExpiryDate": isoformat(rows[0][0].expires_at) if rows else None,
            "allocations": [
                {
                    "id": a.id,
                    "planName": plan_name or "Manual Allocation",
                    "creditsRemaining": a.credits_remaining,
                    "creditsPurchased": a.credits_purchased,
                    "expiresAt": isoformat(a.expires_at),
                    "isAdminAllocated": bool(a.admin_allocated),
                    "allocationNotes": a.allocation_notes,
                    "lastUsed": isoformat(a.last_used_at),
                }
                for a, plan_name in rows
            ],
        }

    def distributions(self) -> list[dict[str, Any]]:
        """Admin view: every allocation with usage and a derived status."""
        now = utcnow()
        last_call = (
            self.db.query(
                CallSession.caller_id.label("user_id"),
                func.max(CallSession.created_at).label("last_call"),
            )
            .filter(CallSession.status == "completed")
            .group_by(CallSession.caller_id)
            .subquery()
        )
        rows = (
            self.db.query(CreditAllocation, User.name, last_call.c.last_call)
            .outerjoin(User, User.id == CreditAllocation.user_id)
            .outerjoin(last_call, last_call.c.user_id == CreditAllocation.user_id)
            .filter(CreditAllocation.credits_purchased > 0)
            .order_by(CreditAllocation.updated_at.desc())
            .all()
        )
        items = []
        for allocation, user_name, last_call_at in rows:
            expires_at = ensure_utc(allocation.expires_at)
            if expires_at <= now:
                status = "expired"
            elif allocation.credits_remaining <= 0:
                status = "exhausted"
            else:
                status = "active"
            items.append({
                "user_id": allocation.user_id,
                "user_name": user_name,
                "allocation_id": allocation.id,
                "allocated_credits": allocation.credits_purchased,
                "used_credits": allocation.credits_purchased - allocation.credits_remaining,
                "remaining_credits": allocation.credits_remaining,
                "expires_at": isoformat(expires_at),
                "last_call": isoformat(last_call_at),
                "status": status,
            })
        return items
