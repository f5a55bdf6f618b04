import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from app.core.config import settings

# Set by the HTTP middleware; empty in Celery workers.
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; only whitelisted ``extra`` keys are emitted."""

    EXTRA_FIELDS = (
        "request_id", "path", "method", "status_code", "latency_ms",
        "user_id", "admin_id", "session_id", "external_call_id",
        "payment_id", "plan_id", "allocation_id", "amount", "available",
        "status", "provider_status", "duration", "cost", "action", "error",
        "breaker_name", "old_state", "new_state",
        "checked", "synced", "failed",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in self.EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Decimal amounts and datetimes fall back to str
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    formatter = JsonFormatter()
    request_filter = RequestIdFilter()

    stream = logging.StreamHandler()
    handlers: list[logging.Handler] = [stream]
    if settings.log_file:
        handlers.append(
            RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(request_filter)

    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    root.handlers = handlers
    # httpx logs every request at INFO; provider calls are already logged by the client
    logging.getLogger("httpx").setLevel(logging.WARNING)
