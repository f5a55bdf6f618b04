"""
Admin API: payment verification, provider budget, manual credit adjustment,
credit distributions, audit trail. Every route requires the admin role.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.admin import AdjustCreditsIn, BudgetSettingsIn, PaginatedResponse, VerifyPaymentIn
from app.services.audit.service import AuditService
from app.services.auth.jwt import Principal, require_admin
from app.services.budget.service import BudgetSettingsService, BudgetTracker
from app.services.credits.service import CreditLedgerService
from app.services.payments.service import PaymentVerificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ---------- Payments ----------
@router.post("/payments/{payment_id}/verify")
def payments_verify(
    payment_id: str,
    body: VerifyPaymentIn,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = PaymentVerificationService(db).verify(payment_id, body.action, admin.user_id, body.notes)
    return {"status": result["status"]}


# ---------- Budget ----------
@router.get("/budget")
def budget_usage(db: Session = Depends(get_db)):
    return BudgetTracker(db).usage()


@router.post("/budget-settings")
def budget_settings_update(
    body: BudgetSettingsIn,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    BudgetSettingsService(db).update(
        admin.user_id,
        body.total_credits,
        body.cost_per_minute,
        body.monthly_limit,
    )
    return {"success": True}


# ---------- Credits ----------
@router.post("/credits/adjust")
def credits_adjust(
    body: AdjustCreditsIn,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        result = CreditLedgerService(db).adjust(
            body.user_id,
            body.action,
            body.credits,
            body.reason,
            admin.user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {
        "success": True,
        "allocationId": result.allocation_id,
        "oldBalance": result.old_balance,
        "newBalance": result.new_balance,
    }


@router.get("/credit-distributions")
def credit_distributions(db: Session = Depends(get_db)):
    return {"items": CreditLedgerService(db).distributions()}


# ---------- Audit ----------
@router.get("/audit-logs", response_model=PaginatedResponse)
def audit_list(
    db: Session = Depends(get_db),
    action: str | None = None,
    entity_id: str | None = None,
    actor_id: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    rows, total = AuditService(db).list_entries(
        action=action,
        entity_id=entity_id,
        actor_id=actor_id,
        page=page,
        page_size=page_size,
    )
    items = [AuditService.as_dict(r) for r in rows]
    return PaginatedResponse(items=items, total=total, page=page, pages=(total + page_size - 1) // page_size)
