"""Tests for CallSessionService.reconcile — persistence, exactly-once billing, provider failures."""
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from app.core.errors import ProviderUnavailableError, SessionNotFoundError
from app.models.audit_log import AuditLog
from app.models.call_credit import CreditAllocation
from app.models.call_session import CallSession
from app.services.auth.jwt import Principal
from app.services.calls.provider import ProviderCallReport
from app.services.calls.service import CallSessionService
from app.services.calls.status import CallStatus, normalize_status
from app.services.credits.service import CreditLedgerService


def _report(call_id, status, duration=0, recording_url=None):
    return ProviderCallReport(
        external_call_id=call_id,
        status=normalize_status(status),
        raw_status=status,
        duration_seconds=duration,
        recording_url=recording_url,
    )


@pytest.fixture()
def parties(make_user):
    return make_user(name="Caller"), make_user(name="Receiver")


@pytest.fixture()
def provider():
    return MagicMock()


def _service(db, provider):
    return CallSessionService(db, provider=provider)


class TestBilling:
    def test_completed_call_deducts_once(self, db, parties, provider, budget, make_allocation, make_session):
        caller, receiver = parties
        allocation = make_allocation(caller.id, remaining=1)
        session = make_session(caller.id, receiver.id)
        provider.get_call.return_value = _report(session.external_call_id, "completed", 125, "https://rec/1.mp3")
        principal = Principal(user_id=caller.id)

        snapshot = _service(db, provider).reconcile(principal, session_id=session.id)

        assert snapshot.status is CallStatus.COMPLETED
        assert snapshot.duration_seconds == 125
        assert snapshot.billed is True
        # 125s -> 3 started minutes at 2.50
        assert snapshot.cost == Decimal("7.50")
        db.refresh(allocation)
        assert allocation.credits_remaining == 0

        # repeated poll: status re-confirmed, no second deduction
        again = _service(db, provider).reconcile(principal, session_id=session.id)
        assert again.status is CallStatus.COMPLETED
        db.refresh(allocation)
        assert allocation.credits_remaining == 0
        assert db.query(AuditLog).filter(AuditLog.action == "deducted").count() == 1
        assert db.query(AuditLog).filter(AuditLog.action == "call_billed").count() == 1

    def test_insufficient_credits_still_marks_billed(self, db, parties, provider, budget, make_session):
        caller, receiver = parties
        session = make_session(caller.id, receiver.id)
        provider.get_call.return_value = _report(session.external_call_id, "completed", 30)

        snapshot = _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert snapshot.status is CallStatus.COMPLETED
        assert snapshot.billed is True
        stored = db.get(CallSession, session.id)
        assert stored.caller_credits_deducted is True
        assert stored.receiver_credits_deducted is True
        failed = db.query(AuditLog).filter(AuditLog.action == "deduction_failed").one()
        assert failed.entity_id == session.id
        assert failed.payload["available"] == 0

    def test_busy_with_zero_duration_is_zero_cost(self, db, parties, provider, budget, make_allocation, make_session):
        caller, receiver = parties
        make_allocation(caller.id, remaining=5)
        session = make_session(caller.id, receiver.id)
        provider.get_call.return_value = _report(session.external_call_id, "busy", 0)

        snapshot = _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert snapshot.status is CallStatus.BUSY
        assert snapshot.cost == Decimal("0.00")
        assert snapshot.billed is True
        _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)
        assert CreditLedgerService(db).total_active_balance(caller.id).remaining == 4

    def test_non_terminal_status_does_not_bill(self, db, parties, provider, budget, make_allocation, make_session):
        caller, receiver = parties
        make_allocation(caller.id, remaining=2)
        session = make_session(caller.id, receiver.id)
        provider.get_call.return_value = _report(session.external_call_id, "in-progress", 12)

        snapshot = _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert snapshot.status is CallStatus.IN_PROGRESS
        assert snapshot.started_at is not None
        assert snapshot.ended_at is None
        assert snapshot.billed is False
        assert snapshot.cost is None
        assert CreditLedgerService(db).total_active_balance(caller.id).remaining == 2

    def test_cost_uses_default_budget_when_unset(self, db, parties, provider, make_allocation, make_session):
        caller, receiver = parties
        make_allocation(caller.id, remaining=1)
        session = make_session(caller.id, receiver.id)
        provider.get_call.return_value = _report(session.external_call_id, "completed", 60)

        snapshot = _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert snapshot.cost == Decimal("1.00")


class TestPersistence:
    def test_duration_never_regresses(self, db, parties, provider, budget, make_session):
        caller, receiver = parties
        session = make_session(caller.id, receiver.id, status="in_progress", duration_seconds=90)
        provider.get_call.return_value = _report(session.external_call_id, "in-progress", 40)

        snapshot = _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert snapshot.duration_seconds == 90

    def test_terminal_status_not_replaced_by_late_report(self, db, parties, provider, budget, make_allocation, make_session):
        caller, receiver = parties
        make_allocation(caller.id, remaining=3)
        session = make_session(caller.id, receiver.id)
        svc = _service(db, provider)
        principal = Principal(user_id=caller.id)
        provider.get_call.return_value = _report(session.external_call_id, "completed", 70, "https://rec/a.mp3")
        first = svc.reconcile(principal, session_id=session.id)

        provider.get_call.return_value = _report(session.external_call_id, "ringing", 0)
        second = svc.reconcile(principal, session_id=session.id)

        assert second.status is CallStatus.COMPLETED
        assert second.duration_seconds == 70
        assert second.ended_at == first.ended_at
        assert second.recording_url == "https://rec/a.mp3"
        assert CreditLedgerService(db).total_active_balance(caller.id).remaining == 2

    def test_lookup_by_external_call_id(self, db, parties, provider, budget, make_session):
        caller, receiver = parties
        session = make_session(caller.id, receiver.id, external_call_id="CA-ext-1")
        provider.get_call.return_value = _report("CA-ext-1", "ringing")

        snapshot = _service(db, provider).reconcile(Principal(user_id=receiver.id), external_call_id="CA-ext-1")

        assert snapshot.id == session.id
        assert snapshot.status is CallStatus.RINGING
        provider.get_call.assert_called_once_with("CA-ext-1")

    def test_session_without_provider_id_returns_current_state(self, db, parties, provider, make_session):
        caller, receiver = parties
        session = make_session(caller.id, receiver.id, external_call_id=None)

        snapshot = _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert snapshot.status is CallStatus.INITIATED
        provider.get_call.assert_not_called()


class TestFailures:
    def test_provider_error_leaves_session_unchanged(self, db, parties, provider, budget, make_allocation, make_session):
        caller, receiver = parties
        make_allocation(caller.id, remaining=1)
        session = make_session(caller.id, receiver.id, status="ringing")
        provider.get_call.side_effect = ProviderUnavailableError("timeout")

        with pytest.raises(ProviderUnavailableError) as exc:
            _service(db, provider).reconcile(Principal(user_id=caller.id), session_id=session.id)

        assert exc.value.retryable is True
        stored = db.get(CallSession, session.id)
        assert stored.status == "ringing"
        assert stored.caller_credits_deducted is False
        assert CreditLedgerService(db).total_active_balance(caller.id).remaining == 1

    def test_unknown_session(self, db, provider):
        with pytest.raises(SessionNotFoundError):
            _service(db, provider).reconcile(Principal(user_id="u1"), session_id=str(uuid4()))

    def test_session_of_other_users_is_not_found(self, db, parties, provider, make_session):
        caller, receiver = parties
        session = make_session(caller.id, receiver.id)

        with pytest.raises(SessionNotFoundError):
            _service(db, provider).reconcile(Principal(user_id="intruder"), session_id=session.id)
        provider.get_call.assert_not_called()

    def test_flags_and_balance_consistent_after_many_polls(self, db, parties, provider, budget, make_allocation, make_session):
        caller, receiver = parties
        make_allocation(caller.id, remaining=3)
        sessions = [make_session(caller.id, receiver.id) for _ in range(2)]
        svc = _service(db, provider)
        for s in sessions:
            provider.get_call.return_value = _report(s.external_call_id, "completed", 61)
            for _ in range(3):
                svc.reconcile(Principal(user_id=caller.id), session_id=s.id)

        remaining = sum(
            a.credits_remaining
            for a in db.query(CreditAllocation).filter(CreditAllocation.user_id == caller.id)
        )
        billed = db.query(CallSession).filter(CallSession.caller_credits_deducted.is_(True)).count()
        assert remaining == 3 - billed
