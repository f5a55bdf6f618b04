"""
Celery application for background call reconciliation.
Worker: celery -A app.core.celery_app worker -Q calls
Beat:   celery -A app.core.celery_app beat
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "call_credits",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.workers.tasks.sync_stuck_calls"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="calls",
    result_expires=3600,
    beat_schedule={
        # provider webhooks can be lost; sweep sessions stuck in a live status
        "sync-stuck-calls": {
            "task": "app.workers.tasks.sync_stuck_calls.sync_stuck_calls",
            "schedule": crontab(minute="*/5"),
        },
    },
)
