"""
Celery beat task: reconcile call sessions still non-terminal some minutes after creation.
Covers missed or never-delivered provider webhooks; billing goes through the same
idempotent write step as client polls.
"""
import logging

from sqlalchemy.exc import ProgrammingError

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.calls.provider import ExotelClient
from app.services.calls.service import CallSessionService

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.sync_stuck_calls.sync_stuck_calls",
    time_limit=240,
    soft_time_limit=230,
)
def sync_stuck_calls() -> dict:
    db = SessionLocal()
    provider = ExotelClient()
    try:
        result = CallSessionService(db, provider=provider).sync_stuck_sessions()
        if result["checked"]:
            logger.info("sync_stuck_calls", extra=result)
        if result["failed"]:
            logger.warning("sync_stuck_calls_provider_failures", extra=result)
        return {"ok": True, **result}
    except ProgrammingError as e:
        msg = str(e.orig) if getattr(e, "orig", None) else str(e)
        db.rollback()
        if "does not exist" in msg or "UndefinedTable" in msg:
            return {"ok": True, "skipped": "table_not_found"}
        logger.exception("sync_stuck_calls_error")
        return {"ok": False}
    except Exception:
        logger.exception("sync_stuck_calls_error")
        db.rollback()
        return {"ok": False}
    finally:
        provider.close()
        db.close()
