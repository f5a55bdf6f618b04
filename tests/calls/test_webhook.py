"""Provider status callbacks and the stuck-call sweep share the reconcile write path."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.core.errors import ProviderUnavailableError, ValidationError
from app.models.call_session import CallSession
from app.models.provider_webhook_event import ProviderWebhookEvent
from app.services.calls.provider import build_report
from app.services.calls.service import CallSessionService
from app.services.credits.service import CreditLedgerService


class TestHandleWebhook:
    def test_terminal_callback_bills_once(self, db, make_user, make_allocation, make_session, budget):
        caller, receiver = make_user(), make_user()
        make_allocation(caller.id, remaining=2)
        session = make_session(caller.id, receiver.id, external_call_id="CA-hook")
        payload = {"CallSid": "CA-hook", "Status": "completed", "ConversationDuration": "95", "RecordingUrl": "https://rec/h.mp3"}
        svc = CallSessionService(db, provider=MagicMock())

        first = svc.handle_webhook(payload)
        second = svc.handle_webhook(payload)

        assert first.billed and second.billed
        assert second.duration_seconds == 95
        assert second.recording_url == "https://rec/h.mp3"
        assert CreditLedgerService(db).total_active_balance(caller.id).remaining == 1
        assert db.get(CallSession, session.id).status == "completed"

    def test_missing_call_sid(self, db):
        with pytest.raises(ValidationError):
            CallSessionService(db, provider=MagicMock()).handle_webhook({"Status": "completed"})

    def test_unknown_call_sid_is_recorded_and_acknowledged(self, db):
        result = CallSessionService(db, provider=MagicMock()).handle_webhook({"CallSid": "CA-nope", "Status": "busy"})

        assert result is None
        event = db.query(ProviderWebhookEvent).filter_by(call_sid="CA-nope").one()
        assert event.status == "busy"
        assert event.processed is False

    def test_answered_event_moves_session_in_progress(self, db, make_user, make_session):
        caller, receiver = make_user(), make_user()
        session = make_session(caller.id, receiver.id, status="ringing", external_call_id="CA-ans")

        result = CallSessionService(db, provider=MagicMock()).handle_webhook(
            {"CallSid": "CA-ans", "EventType": "answered", "StartTime": "2024-05-01 10:15:00"}
        )

        assert result.status.value == "in_progress"
        assert result.started_at == datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc)
        assert result.billed is False
        assert db.get(CallSession, session.id).status == "in_progress"

    def test_answered_event_without_start_time_uses_now(self, db, make_user, make_session):
        caller, receiver = make_user(), make_user()
        make_session(caller.id, receiver.id, status="ringing", external_call_id="CA-ans2")

        result = CallSessionService(db, provider=MagicMock()).handle_webhook({"CallSid": "CA-ans2", "EventType": "Answered"})

        assert result.status.value == "in_progress"
        assert result.started_at is not None

    def test_terminal_event_type_uses_status(self, db, make_user, make_allocation, make_session, budget):
        caller, receiver = make_user(), make_user()
        make_allocation(caller.id, remaining=1)
        make_session(caller.id, receiver.id, status="ringing", external_call_id="CA-term")

        result = CallSessionService(db, provider=MagicMock()).handle_webhook(
            {"CallSid": "CA-term", "EventType": "terminal", "Status": "no-answer"}
        )

        assert result.status.value == "no_answer"
        assert result.billed is True

    def test_unrecognized_event_type_leaves_session_alone(self, db, make_user, make_session):
        caller, receiver = make_user(), make_user()
        session = make_session(caller.id, receiver.id, status="ringing", external_call_id="CA-other")

        result = CallSessionService(db, provider=MagicMock()).handle_webhook(
            {"CallSid": "CA-other", "EventType": "dtmf", "Status": "weird"}
        )

        assert result.status.value == "ringing"
        assert db.get(CallSession, session.id).status == "ringing"
        event = db.query(ProviderWebhookEvent).filter_by(call_sid="CA-other").one()
        assert event.event_type == "dtmf"
        assert event.processed is False

    def test_applied_event_is_marked_processed(self, db, make_user, make_allocation, make_session, budget):
        caller, receiver = make_user(), make_user()
        make_allocation(caller.id, remaining=1)
        make_session(caller.id, receiver.id, external_call_id="CA-done")
        payload = {"CallSid": "CA-done", "EventType": "terminal", "Status": "completed", "ConversationDuration": "30"}

        CallSessionService(db, provider=MagicMock()).handle_webhook(payload)

        event = db.query(ProviderWebhookEvent).filter_by(call_sid="CA-done").one()
        assert event.processed is True
        assert event.processed_at is not None
        assert event.payload == payload
        assert event.error is None

    def test_failed_processing_keeps_event_with_error(self, db, make_user, make_allocation, make_session, budget):
        caller, receiver = make_user(), make_user()
        make_allocation(caller.id, remaining=1)
        session = make_session(caller.id, receiver.id, status="in_progress", external_call_id="CA-fail")
        svc = CallSessionService(db, provider=MagicMock())

        with patch.object(CallSessionService, "_bill", side_effect=RuntimeError("ledger down")):
            with pytest.raises(RuntimeError):
                svc.handle_webhook({"CallSid": "CA-fail", "EventType": "terminal", "Status": "completed"})

        event = db.query(ProviderWebhookEvent).filter_by(call_sid="CA-fail").one()
        assert event.processed is False
        assert "ledger down" in event.error
        stored = db.get(CallSession, session.id)
        assert stored.status == "in_progress"
        assert stored.is_billed is False


class TestSyncStuckSessions:
    def test_reconciles_only_old_non_terminal_sessions(self, db, make_user, make_allocation, make_session, budget):
        caller, receiver = make_user(), make_user()
        make_allocation(caller.id, remaining=5)
        old = datetime.now(timezone.utc) - timedelta(minutes=10)
        stuck = make_session(caller.id, receiver.id, status="ringing", created_at=old)
        make_session(caller.id, receiver.id, status="completed", created_at=old)
        make_session(caller.id, receiver.id, status="ringing")
        provider = MagicMock()
        provider.get_call.side_effect = lambda call_id: build_report(call_id, {"Status": "no-answer"})

        result = CallSessionService(db, provider=provider).sync_stuck_sessions()

        assert result == {"checked": 1, "synced": 1, "failed": 0}
        provider.get_call.assert_called_once_with(stuck.external_call_id)
        assert db.get(CallSession, stuck.id).status == "no_answer"
        assert CreditLedgerService(db).total_active_balance(caller.id).remaining == 4

    def test_provider_failures_are_counted_not_raised(self, db, make_user, make_session):
        caller, receiver = make_user(), make_user()
        old = datetime.now(timezone.utc) - timedelta(minutes=10)
        stuck = make_session(caller.id, receiver.id, status="in_progress", created_at=old)
        provider = MagicMock()
        provider.get_call.side_effect = ProviderUnavailableError("down")

        result = CallSessionService(db, provider=provider).sync_stuck_sessions()

        assert result == {"checked": 1, "synced": 0, "failed": 1}
        assert db.get(CallSession, stuck.id).status == "in_progress"
