"""
Exotel REST client using httpx sync client.

Every failure mode (transport error, timeout, non-2xx, unparseable body, open
circuit) surfaces as ProviderUnavailableError so callers can treat it as
retryable without inspecting httpx internals.
"""
import json
import logging
import time
from datetime import datetime

import httpx
import pybreaker
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import ProviderUnavailableError
from app.services.calls.status import CallStatus, normalize_status
from app.services.circuit_breaker import get_circuit_breaker
from app.utils.clock import ensure_utc
from app.utils.metrics import provider_request_duration_seconds, provider_requests_total

logger = logging.getLogger(__name__)


class ProviderCallReport(BaseModel):
    """Provider view of one call, already normalized."""

    external_call_id: str
    status: CallStatus
    raw_status: str | None = None
    duration_seconds: int = 0
    recording_url: str | None = None
    started_at: datetime | None = None

    model_config = {"frozen": True}


def parse_duration(value: object) -> int:
    try:
        seconds = int(float(value))  # provider sends "65" or 65 or null
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(seconds, 0)


def build_report(external_call_id: str, call: dict) -> ProviderCallReport:
    raw_status = call.get("Status")
    duration = call.get("Duration")
    if duration in (None, ""):
        duration = call.get("ConversationDuration")
    return ProviderCallReport(
        external_call_id=call.get("Sid") or external_call_id,
        status=normalize_status(raw_status),
        raw_status=raw_status if isinstance(raw_status, str) else None,
        duration_seconds=parse_duration(duration),
        recording_url=call.get("RecordingUrl") or None,
    )


def parse_provider_time(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip()))
    except ValueError:
        return None


def build_webhook_report(payload: dict) -> ProviderCallReport | None:
    """
    Status callbacks are keyed on EventType: "answered" means the call is live
    whatever Status says, "terminal" (or no event type) carries the final
    Status. Any other event type carries nothing to apply and yields None.
    """
    call_id = payload["CallSid"]
    event_type = str(payload.get("EventType") or "").strip().lower()
    if event_type == "answered":
        return ProviderCallReport(
            external_call_id=call_id,
            status=CallStatus.IN_PROGRESS,
            raw_status=payload.get("Status") if isinstance(payload.get("Status"), str) else None,
            started_at=parse_provider_time(payload.get("StartTime")),
        )
    if event_type in ("", "terminal"):
        return build_report(call_id, payload)
    return None


class ExotelClient:
    """Sync provider client, shared by API workers and Celery tasks."""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._base_url = settings.exotel_base_url
        self._client = client
        self._breaker = get_circuit_breaker("exotel")

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=settings.exotel_timeout,
                auth=(settings.exotel_api_key, settings.exotel_api_token),
                headers={"Accept": "application/json"},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        # Runs inside the breaker: only transport errors and 5xx count as provider failures
        resp = self.client.request(method, url, **kwargs)
        if resp.status_code >= 500:
            raise ProviderUnavailableError(
                f"Telephony provider error: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                body=resp.text[:2000],
            )
        return resp

    def _request(self, operation: str, method: str, path: str, **kwargs) -> dict:
        start = time.time()
        url = f"{self._base_url}{path}"
        try:
            resp = self._breaker.call(self._send, method, url, **kwargs)
        except ProviderUnavailableError as e:
            provider_requests_total.labels(operation=operation, status=str(e.provider_status_code)).inc()
            logger.warning(
                "provider_http_error",
                extra={"action": operation, "status_code": e.provider_status_code, "error": (e.body or "")[:500]},
            )
            raise
        except pybreaker.CircuitBreakerError as e:
            provider_requests_total.labels(operation=operation, status="circuit_open").inc()
            raise ProviderUnavailableError("Telephony provider circuit is open") from e
        except httpx.TimeoutException as e:
            provider_requests_total.labels(operation=operation, status="timeout").inc()
            logger.warning("provider_timeout", extra={"action": operation, "error": str(e)})
            raise ProviderUnavailableError("Telephony provider timed out") from e
        except httpx.HTTPError as e:
            provider_requests_total.labels(operation=operation, status="error").inc()
            logger.warning("provider_transport_error", extra={"action": operation, "error": str(e)})
            raise ProviderUnavailableError(f"Telephony provider unreachable: {e}") from e
        finally:
            provider_request_duration_seconds.labels(operation=operation).observe(time.time() - start)

        if resp.status_code // 100 != 2:
            provider_requests_total.labels(operation=operation, status=str(resp.status_code)).inc()
            logger.warning(
                "provider_http_error",
                extra={"action": operation, "status_code": resp.status_code, "error": resp.text[:500]},
            )
            raise ProviderUnavailableError(
                f"Telephony provider error: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                body=resp.text[:2000],
            )
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            provider_requests_total.labels(operation=operation, status="bad_body").inc()
            raise ProviderUnavailableError(
                "Telephony provider returned a non-JSON body",
                status_code=resp.status_code,
                body=resp.text[:2000],
            ) from e
        provider_requests_total.labels(operation=operation, status="success").inc()
        return data if isinstance(data, dict) else {}

    def get_call(self, external_call_id: str) -> ProviderCallReport:
        """One GET per reconciliation: current status, duration and recording URL."""
        data = self._request("get_call", "GET", f"/Calls/{external_call_id}.json")
        call = data.get("Call")
        if not isinstance(call, dict):
            raise ProviderUnavailableError(
                "Telephony provider response has no Call object",
                body=json.dumps(data)[:2000],
            )
        return build_report(external_call_id, call)

    def connect_call(self, caller_number: str, receiver_number: str, custom_field: dict) -> ProviderCallReport:
        """Ask the provider to ring the caller and bridge them to the receiver."""
        form = {
            "From": caller_number,
            "To": receiver_number,
            "CallerId": settings.exotel_virtual_number,
            "CallType": "trans",
            "TimeLimit": str(settings.exotel_call_time_limit),
            "TimeOut": str(settings.exotel_ring_timeout),
            "StatusCallback": self.status_callback_url(),
            "StatusCallbackEvents[0]": "terminal",
            "StatusCallbackEvents[1]": "answered",
            "StatusCallbackContentType": "application/json",
            "Record": "true",
            "CustomField": json.dumps(custom_field),
        }
        data = self._request("connect_call", "POST", "/Calls/connect.json", data=form)
        call = data.get("Call")
        if not isinstance(call, dict) or not call.get("Sid"):
            raise ProviderUnavailableError(
                "Telephony provider did not return a call id",
                body=json.dumps(data)[:2000],
            )
        return build_report(call["Sid"], call)

    @staticmethod
    def status_callback_url() -> str:
        url = f"{settings.app_url.rstrip('/')}/calls/webhook"
        if settings.exotel_webhook_token:
            url = f"{url}?token={settings.exotel_webhook_token}"
        return url
