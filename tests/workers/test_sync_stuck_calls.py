"""Celery beat task wrapper around CallSessionService.sync_stuck_sessions."""
from unittest.mock import MagicMock, patch


@patch("app.workers.tasks.sync_stuck_calls.ExotelClient")
@patch("app.workers.tasks.sync_stuck_calls.CallSessionService")
@patch("app.workers.tasks.sync_stuck_calls.SessionLocal")
def test_task_returns_counts_and_closes_resources(session_local, service_cls, client_cls):
    db = MagicMock()
    session_local.return_value = db
    service_cls.return_value.sync_stuck_sessions.return_value = {"checked": 2, "synced": 1, "failed": 1}

    from app.workers.tasks.sync_stuck_calls import sync_stuck_calls

    result = sync_stuck_calls()

    assert result == {"ok": True, "checked": 2, "synced": 1, "failed": 1}
    service_cls.assert_called_once_with(db, provider=client_cls.return_value)
    db.close.assert_called_once()
    client_cls.return_value.close.assert_called_once()


@patch("app.workers.tasks.sync_stuck_calls.ExotelClient")
@patch("app.workers.tasks.sync_stuck_calls.CallSessionService")
@patch("app.workers.tasks.sync_stuck_calls.SessionLocal")
def test_task_swallows_unexpected_errors(session_local, service_cls, client_cls):
    db = MagicMock()
    session_local.return_value = db
    service_cls.return_value.sync_stuck_sessions.side_effect = RuntimeError("boom")

    from app.workers.tasks.sync_stuck_calls import sync_stuck_calls

    assert sync_stuck_calls() == {"ok": False}
    db.rollback.assert_called_once()
    db.close.assert_called_once()


def test_beat_schedule_registers_task():
    from app.core.celery_app import celery_app

    entry = celery_app.conf.beat_schedule["sync-stuck-calls"]
    assert entry["task"] == "app.workers.tasks.sync_stuck_calls.sync_stuck_calls"
