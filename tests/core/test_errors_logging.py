import json
import logging

from app.core.errors import InsufficientCreditsError, PaymentConflictError, ProviderUnavailableError
from app.core.logging import JsonFormatter


def test_error_payloads():
    assert ProviderUnavailableError("down", status_code=503).as_dict() == {
        "error": "provider_unavailable",
        "detail": "down",
        "retryable": True,
    }
    conflict = PaymentConflictError("Payment already verified")
    assert conflict.status_code == 409
    assert conflict.as_dict()["retryable"] is False

    short = InsufficientCreditsError("u1", 2, 1)
    assert short.status_code == 402
    assert short.context == {"user_id": "u1", "requested": 2, "available": 1}


def test_json_formatter_keeps_whitelisted_extras():
    record = logging.LogRecord("calls", logging.INFO, __file__, 1, "call_reconciled", None, None)
    record.session_id = "s1"
    record.duration = 65
    record.password = "nope"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "call_reconciled"
    assert payload["session_id"] == "s1"
    assert payload["duration"] == 65
    assert "password" not in payload
