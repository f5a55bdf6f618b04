"""Status normalization: provider vocabulary -> canonical CallStatus."""
import pytest

from app.services.calls.status import CallStatus, TERMINAL_STATUSES, is_terminal, normalize_status


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("completed", CallStatus.COMPLETED),
        ("Completed", CallStatus.COMPLETED),
        ("  busy ", CallStatus.BUSY),
        ("no-answer", CallStatus.NO_ANSWER),
        ("no answer", CallStatus.NO_ANSWER),
        ("in-progress", CallStatus.IN_PROGRESS),
        ("answered", CallStatus.IN_PROGRESS),
        ("ringing", CallStatus.RINGING),
        ("queued", CallStatus.UNKNOWN),
        ("", CallStatus.UNKNOWN),
        (None, CallStatus.UNKNOWN),
        (42, CallStatus.UNKNOWN),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) is expected


def test_normalize_is_idempotent():
    for status in CallStatus:
        assert normalize_status(normalize_status(status.value)) is status


def test_terminal_set():
    assert TERMINAL_STATUSES == {
        CallStatus.COMPLETED,
        CallStatus.BUSY,
        CallStatus.NO_ANSWER,
        CallStatus.FAILED,
        CallStatus.CANCELED,
    }
    assert is_terminal("no-answer")
    assert not is_terminal("in_progress")
    assert not is_terminal("garbage")
