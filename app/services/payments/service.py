"""
PaymentVerificationService — admin decision on a pending call-plan payment.

Responsibilities:
- pending -> verified | rejected exactly once (conditional UPDATE, loser gets 409)
- On verify: allocate plan.call_credits to the payer in the same transaction
- Audit the decision
"""
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import PaymentConflictError, PaymentNotFoundError, ValidationError
from app.models.payment import Payment
from app.models.plan import Plan
from app.services.audit.service import AuditService
from app.services.credits.service import CreditLedgerService
from app.utils.metrics import payment_verifications_total

logger = logging.getLogger(__name__)

VERIFY_ACTIONS = {"verify": "verified", "reject": "rejected"}


class PaymentVerificationService:
    def __init__(self, db: Session, ledger: CreditLedgerService | None = None):
        self.db = db
        self.ledger = ledger or CreditLedgerService(db)
        self.audit = AuditService(db)

    def _load(self, payment_id: str) -> tuple[Payment, Plan]:
        row = (
            self.db.query(Payment, Plan)
            .join(Plan, Plan.id == Payment.plan_id)
            .filter(Payment.id == payment_id, Plan.plan_type == "call")
            .one_or_none()
        )
        if row is None:
            raise PaymentNotFoundError("Payment not found or not a call credit plan", payment_id=payment_id)
        return row

    def verify(self, payment_id: str, action: str, admin_id: str, notes: str | None = None) -> dict[str, Any]:
        new_status = VERIFY_ACTIONS.get(action)
        if new_status is None:
            raise ValidationError("Invalid action. Use 'verify' or 'reject'")

        try:
            payment, plan = self._load(payment_id)
            now = datetime.now(timezone.utc)
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == "pending")
                .values(
                    status=new_status,
                    verified_by=admin_id,
                    verified_at=now,
                    admin_notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PaymentConflictError(
                    f"Payment already {payment.status}",
                    payment_id=payment_id,
                )

            allocation_id = None
            if new_status == "verified":
                allocation_id = self.ledger.allocate(
                    payment.user_id,
                    plan.id,
                    plan.call_credits,
                    settings.credit_validity_months,
                    actor_type="admin",
                    actor_id=admin_id,
                    reason=f"Payment {payment_id} verified",
                )

            self.audit.log(
                actor_type="admin",
                actor_id=admin_id,
                action=f"payment_{new_status}",
                entity_type="payment",
                entity_id=payment_id,
                amount=plan.call_credits if new_status == "verified" else 0,
                reason=notes,
                payload={
                    "user_id": payment.user_id,
                    "plan_id": plan.id,
                    "allocation_id": allocation_id,
                    "payment_amount": str(payment.amount),
                },
            )
            self.db.commit()
        except PaymentConflictError:
            self.db.rollback()
            payment_verifications_total.labels(action=action, outcome="conflict").inc()
            logger.warning("payment_already_processed", extra={"payment_id": payment_id, "admin_id": admin_id})
            raise
        except Exception:
            self.db.rollback()
            payment_verifications_total.labels(action=action, outcome="error").inc()
            raise

        payment_verifications_total.labels(action=action, outcome="ok").inc()
        logger.info(
            "payment_verification_recorded",
            extra={
                "payment_id": payment_id,
                "admin_id": admin_id,
                "user_id": payment.user_id,
                "plan_id": plan.id,
                "status": new_status,
                "amount": plan.call_credits,
            },
        )
        return {"status": new_status, "allocation_id": allocation_id}
