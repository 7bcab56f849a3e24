"""Celery application instance and configuration."""
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from alo.config import settings


def _resolve_broker_url() -> str:
    if settings.CELERY_BROKER_URL is not None:
        return str(settings.CELERY_BROKER_URL)
    return str(settings.REDIS_URL)


def _resolve_result_backend() -> str:
    if settings.CELERY_RESULT_BACKEND is not None:
        return str(settings.CELERY_RESULT_BACKEND)
    return str(settings.REDIS_URL)


celery_app = Celery(
    "alo_push_campaigns",
    broker=_resolve_broker_url(),
    backend=_resolve_result_backend(),
    include=["alo.tasks.campaigns"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    # No campaign-level timeout: a large audience stays in ``sending`` until drained.
    task_time_limit=None,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_routes={"alo.tasks.campaigns.send_campaign": {"queue": "campaign_send"}},
)

celery_app.conf.beat_schedule = {
    "queue-due-campaigns": {
        "task": "alo.tasks.campaigns.queue_due_campaigns",
        "schedule": crontab(minute="*/5"),
    },
    "dispatch-queued-campaigns": {
        "task": "alo.tasks.campaigns.dispatch_queued_campaigns",
        "schedule": crontab(minute="*"),
    },
    "cleanup-draft-campaigns": {
        "task": "alo.tasks.campaigns.cleanup_draft_campaigns",
        "schedule": crontab(hour=2, minute=0),
    },
}

__all__ = ["celery_app"]
