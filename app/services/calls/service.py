"""
CallSessionService — keeps a CallSession consistent with the telephony provider
and bills each call exactly once.

Flow for every status source (client poll, provider webhook, stuck-call sync):
  1. read the session and close the read transaction,
  2. talk to the provider with no transaction open,
  3. apply_provider_status(): one transaction that locks the session row,
     persists status/duration/timestamps and, on the first terminal status,
     sets cost + billing flags and deducts the caller's credit.
The flag check and the flag set happen under the same row lock as the
deduction, so duplicate or concurrent polls cannot bill twice.
"""
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app.core.config import settings
from app.core.errors import (
    AuthorizationError,
    InsufficientCreditsError,
    NotFoundError,
    ProviderUnavailableError,
    SessionNotFoundError,
    ValidationError,
)
from app.models.call_session import CallSession
from app.models.provider_webhook_event import ProviderWebhookEvent
from app.models.user import User
from app.services.audit.service import AuditService
from app.services.auth.jwt import Principal
from app.services.budget.service import BudgetSettingsService, call_cost
from app.services.calls.provider import ExotelClient, ProviderCallReport, build_webhook_report
from app.services.calls.status import TERMINAL_STATUSES, CallStatus, normalize_status
from app.services.credits.service import CreditLedgerService
from app.utils.clock import ensure_utc, isoformat, utcnow
from app.utils.metrics import call_reconciliations_total

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = tuple(s.value for s in CallStatus if s not in TERMINAL_STATUSES)


class SessionSnapshot(BaseModel):
    id: str
    caller_id: str
    receiver_id: str
    external_call_id: str | None = None
    status: CallStatus
    duration_seconds: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    recording_url: str | None = None
    cost: Decimal | None = None
    billed: bool = False

    model_config = {"frozen": True}

    @classmethod
    def from_model(cls, session: CallSession) -> "SessionSnapshot":
        return cls(
            id=session.id,
            caller_id=session.caller_id,
            receiver_id=session.receiver_id,
            external_call_id=session.external_call_id,
            status=normalize_status(session.status),
            duration_seconds=session.duration_seconds or 0,
            started_at=ensure_utc(session.started_at),
            ended_at=ensure_utc(session.ended_at),
            recording_url=session.recording_url,
            cost=session.cost,
            billed=session.is_billed,
        )

    def as_response(self) -> dict[str, Any]:
        return {
            "callSessionId": self.id,
            "status": self.status.value,
            "duration": self.duration_seconds,
            "startedAt": isoformat(self.started_at),
            "endedAt": isoformat(self.ended_at),
            "recordingUrl": self.recording_url,
            "externalCallId": self.external_call_id,
        }


class CallSessionService:
    def __init__(
        self,
        db: Session,
        provider: ExotelClient | None = None,
        ledger: CreditLedgerService | None = None,
        budget: BudgetSettingsService | None = None,
    ):
        self.db = db
        self._provider = provider
        self.ledger = ledger or CreditLedgerService(db)
        self.budget = budget or BudgetSettingsService(db)
        self.audit = AuditService(db)

    @property
    def provider(self) -> ExotelClient:
        if self._provider is None:
            self._provider = ExotelClient()
        return self._provider

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _find(self, session_id: str | None = None, external_call_id: str | None = None) -> CallSession | None:
        if session_id is None and external_call_id is None:
            raise ValidationError("callSessionId or externalCallId is required")
        q = self.db.query(CallSession)
        if session_id is not None:
            q = q.filter(CallSession.id == session_id)
        else:
            q = q.filter(CallSession.external_call_id == external_call_id)
        return q.one_or_none()

    def get_for_participant(
        self,
        principal: Principal,
        session_id: str | None = None,
        external_call_id: str | None = None,
    ) -> CallSession:
        """Sessions are visible to their caller and receiver only; anything else is a 404."""
        session = self._find(session_id, external_call_id)
        if session is None or principal.user_id not in (session.caller_id, session.receiver_id):
            raise SessionNotFoundError(
                "Call session not found",
                session_id=session_id,
                external_call_id=external_call_id,
            )
        return session

    def snapshot(self, principal: Principal, session_id: str) -> SessionSnapshot:
        return SessionSnapshot.from_model(self.get_for_participant(principal, session_id=session_id))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        principal: Principal,
        session_id: str | None = None,
        external_call_id: str | None = None,
        source: str = "poll",
    ) -> SessionSnapshot:
        session = self.get_for_participant(principal, session_id, external_call_id)
        local_id = session.id
        call_id = session.external_call_id
        if not call_id:
            # provider has not assigned a call id yet; nothing to ask
            return SessionSnapshot.from_model(session)
        # no store transaction may stay open across the provider round trip
        self.db.commit()

        report = self._fetch(local_id, call_id, source)
        return self.apply_provider_status(local_id, report, source=source)

    def _fetch(self, session_id: str, external_call_id: str, source: str) -> ProviderCallReport:
        try:
            return self.provider.get_call(external_call_id)
        except ProviderUnavailableError as e:
            call_reconciliations_total.labels(source=source, outcome="provider_error").inc()
            logger.warning(
                "call_reconcile_provider_unavailable",
                extra={
                    "session_id": session_id,
                    "external_call_id": external_call_id,
                    "status_code": e.provider_status_code,
                    "error": e.message,
                },
            )
            raise

    def apply_provider_status(
        self,
        session_id: str,
        report: ProviderCallReport,
        source: str = "poll",
        webhook_event_id: str | None = None,
    ) -> SessionSnapshot:
        """Idempotent upsert of a provider report; bills on the first terminal status."""
        try:
            session = (
                self.db.query(CallSession)
                .filter(CallSession.id == session_id)
                .with_for_update()
                .one_or_none()
            )
            if session is None:
                raise SessionNotFoundError("Call session not found", session_id=session_id)

            now = utcnow()
            previous = normalize_status(session.status)
            status = report.status
            if previous in TERMINAL_STATUSES and status not in TERMINAL_STATUSES:
                # late report from an earlier leg of the call
                status = previous

            session.status = status.value
            session.duration_seconds = max(session.duration_seconds or 0, report.duration_seconds)
            if status == CallStatus.IN_PROGRESS and session.started_at is None:
                session.started_at = report.started_at or now
            if status in TERMINAL_STATUSES and session.ended_at is None:
                session.ended_at = now
            if report.recording_url:
                session.recording_url = report.recording_url
            session.updated_at = now
            self.db.add(session)

            billed = False
            if status in TERMINAL_STATUSES and not session.is_billed:
                self._bill(session, status)
                billed = True

            if webhook_event_id is not None:
                self.db.query(ProviderWebhookEvent).filter(ProviderWebhookEvent.id == webhook_event_id).update(
                    {"processed": True, "processed_at": now}, synchronize_session=False
                )

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        call_reconciliations_total.labels(source=source, outcome="billed" if billed else "updated").inc()
        logger.info(
            "call_reconciled",
            extra={
                "session_id": session.id,
                "external_call_id": session.external_call_id,
                "status": session.status,
                "provider_status": report.raw_status,
                "duration": session.duration_seconds,
            },
        )
        return SessionSnapshot.from_model(session)

    def _bill(self, session: CallSession, status: CallStatus) -> None:
        """Set cost + both flags and debit the caller. Runs inside apply_provider_status's transaction."""
        config = self.budget.get_or_create()
        session.cost = call_cost(session.duration_seconds, config.cost_per_minute)
        session.caller_credits_deducted = True
        session.receiver_credits_deducted = True
        self.db.flush()

        amount = settings.credits_per_call
        try:
            self.ledger.deduct(
                session.caller_id,
                amount,
                session_id=session.id,
                reason=f"Call {status.value}",
            )
        except InsufficientCreditsError as e:
            # The provider already carried the call; the session stays billed.
            self.audit.log(
                actor_type="system",
                actor_id=None,
                action="deduction_failed",
                entity_type="call_session",
                entity_id=session.id,
                amount=amount,
                reason=e.message,
                payload={"user_id": session.caller_id, "available": e.available, "status": status.value},
            )
            logger.warning(
                "deduction_failed_insufficient_credits",
                extra={
                    "session_id": session.id,
                    "user_id": session.caller_id,
                    "amount": amount,
                    "available": e.available,
                },
            )

        self.audit.log(
            actor_type="system",
            actor_id=None,
            action="call_billed",
            entity_type="call_session",
            entity_id=session.id,
            amount=amount,
            reason=f"Call {status.value}",
            payload={
                "duration_seconds": session.duration_seconds,
                "cost": str(session.cost),
                "cost_per_minute": str(config.cost_per_minute),
            },
        )

    # ------------------------------------------------------------------
    # Provider push + background sync
    # ------------------------------------------------------------------

    def handle_webhook(self, payload: dict[str, Any]) -> SessionSnapshot | None:
        """
        Provider status callback. Same persistence/billing path as a poll.

        The raw callback is stored first, in its own commit, and is marked
        processed in the transaction that applies it. Returns None when no
        session matches the CallSid.
        """
        call_id = payload.get("CallSid")
        if not call_id:
            raise ValidationError("CallSid is required")
        event = self._record_webhook(str(call_id), payload)
        event_id, event_type = event.id, event.event_type

        session = self._find(external_call_id=call_id)
        if session is None:
            self.db.commit()
            call_reconciliations_total.labels(source="webhook", outcome="session_not_found").inc()
            logger.warning(
                "webhook_session_not_found",
                extra={"external_call_id": call_id, "provider_status": payload.get("Status")},
            )
            return None
        snapshot = SessionSnapshot.from_model(session)
        self.db.commit()

        report = build_webhook_report(payload)
        if report is None:
            call_reconciliations_total.labels(source="webhook", outcome="ignored").inc()
            logger.info(
                "webhook_event_ignored",
                extra={"session_id": snapshot.id, "external_call_id": call_id, "action": event_type},
            )
            return snapshot

        try:
            return self.apply_provider_status(snapshot.id, report, source="webhook", webhook_event_id=event_id)
        except Exception as e:
            self._mark_webhook_failed(event_id, snapshot, e)
            raise

    def _record_webhook(self, call_id: str, payload: dict[str, Any]) -> ProviderWebhookEvent:
        raw_status = payload.get("Status")
        event = ProviderWebhookEvent(
            call_sid=call_id,
            event_type=str(payload.get("EventType") or "") or None,
            status=raw_status if isinstance(raw_status, str) else None,
            payload=payload,
        )
        try:
            self.db.add(event)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return event

    def _mark_webhook_failed(self, event_id: str, snapshot: SessionSnapshot, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"[:2000]
        logger.error(
            "webhook_processing_failed",
            extra={
                "session_id": snapshot.id,
                "user_id": snapshot.caller_id,
                "external_call_id": snapshot.external_call_id,
                "error": error,
            },
        )
        try:
            self.db.query(ProviderWebhookEvent).filter(ProviderWebhookEvent.id == event_id).update(
                {"error": error}, synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("webhook_event_update_failed", extra={"external_call_id": snapshot.external_call_id})

    def sync_stuck_sessions(self, threshold_minutes: int | None = None) -> dict[str, int]:
        """Reconcile sessions still non-terminal some minutes after creation."""
        minutes = threshold_minutes if threshold_minutes is not None else settings.stuck_call_threshold_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        rows = (
            self.db.query(CallSession.id, CallSession.external_call_id)
            .filter(
                CallSession.status.in_(NON_TERMINAL_STATUSES),
                CallSession.external_call_id.isnot(None),
                CallSession.created_at < cutoff,
            )
            .order_by(CallSession.created_at.asc())
            .all()
        )
        self.db.commit()

        synced = failed = 0
        for session_id, call_id in rows:
            try:
                report = self._fetch(session_id, call_id, "sync")
                self.apply_provider_status(session_id, report, source="sync")
                synced += 1
            except ProviderUnavailableError:
                failed += 1
        return {"checked": len(rows), "synced": synced, "failed": failed}

    # ------------------------------------------------------------------
    # Initiation and logs
    # ------------------------------------------------------------------

    def initiate(self, principal: Principal, target_user_id: str) -> dict[str, Any]:
        caller_id = principal.user_id
        if not target_user_id or target_user_id == caller_id:
            raise ValidationError("Valid target user ID is required")

        balance = self.ledger.total_active_balance(caller_id)
        if balance.remaining <= 0:
            raise InsufficientCreditsError(caller_id, settings.credits_per_call, balance.remaining)
        if not self.ledger.has_active_credits(target_user_id):
            raise AuthorizationError("The user you're trying to call doesn't have active call credits.")

        users = {
            u.id: u
            for u in self.db.query(User)
            .filter(User.id.in_([caller_id, target_user_id]), User.status == "active")
            .all()
        }
        caller, receiver = users.get(caller_id), users.get(target_user_id)
        if caller is None or receiver is None:
            raise NotFoundError("One or both users not found")
        if not caller.phone or not receiver.phone:
            raise ValidationError("Phone numbers are required for both users")
        caller_name, receiver_name = caller.name, receiver.name
        caller_phone, receiver_phone = caller.phone, receiver.phone
        self.db.commit()

        report = self.provider.connect_call(
            caller_phone,
            receiver_phone,
            {"userId": caller_id, "targetUserId": target_user_id, "timestamp": int(time.time() * 1000)},
        )

        try:
            session = CallSession(
                caller_id=caller_id,
                receiver_id=target_user_id,
                external_call_id=report.external_call_id,
                status=CallStatus.INITIATED.value,
            )
            self.db.add(session)
            self.db.flush()
            for user_id in (caller_id, target_user_id):
                self.audit.log(
                    actor_type="user",
                    actor_id=caller_id,
                    action="call_initiated",
                    entity_type="call_session",
                    entity_id=session.id,
                    amount=0,
                    reason="Call initiated to provider",
                    payload={"user_id": user_id},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(
                "call_session_create_failed",
                extra={"user_id": caller_id, "external_call_id": report.external_call_id},
            )
            raise

        logger.info(
            "call_initiated",
            extra={"session_id": session.id, "external_call_id": session.external_call_id, "user_id": caller_id},
        )
        return {
            "callSessionId": session.id,
            "externalCallId": session.external_call_id,
            "status": session.status,
            "callerName": caller_name,
            "receiverName": receiver_name,
        }

    def list_logs(self, user_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        caller = aliased(User)
        receiver = aliased(User)
        rows = (
            self.db.query(CallSession, caller.name, receiver.name)
            .outerjoin(caller, caller.id == CallSession.caller_id)
            .outerjoin(receiver, receiver.id == CallSession.receiver_id)
            .filter(or_(CallSession.caller_id == user_id, CallSession.receiver_id == user_id))
            .order_by(CallSession.created_at.desc())
            .limit(limit or settings.call_logs_limit)
            .all()
        )
        return [
            {
                "id": s.id,
                "externalCallId": s.external_call_id,
                "status": s.status,
                "duration": s.duration_seconds or 0,
                "cost": float(s.cost) if s.cost is not None else 0,
                "recordingUrl": s.recording_url,
                "callerId": s.caller_id,
                "receiverId": s.receiver_id,
                "callerName": caller_name,
                "receiverName": receiver_name,
                "startedAt": isoformat(s.started_at),
                "endedAt": isoformat(s.ended_at),
                "createdAt": isoformat(s.created_at),
            }
            for s, caller_name, receiver_name in rows
        ]
