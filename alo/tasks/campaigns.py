"""Celery tasks driving the campaign lifecycle: queueing, sending, cleanup."""
from __future__ import annotations

from loguru import logger

from alo.celery_app import celery_app
from alo.config import settings
from alo.db.session import SessionLocal
from alo.services.campaigns import CampaignService
from alo.services.delivery import DeliveryEngine
from alo.services.push_transport import WebPushTransport
from alo.services.scheduler import CampaignScheduler


@celery_app.task(name="alo.tasks.campaigns.queue_due_campaigns")
def queue_due_campaigns(limit: int | None = None) -> dict[str, object]:
    """Promote scheduled campaigns whose send time has come and hand them to senders."""

    db = SessionLocal()
    try:
        result = CampaignScheduler(db).sweep(limit)
    finally:
        db.close()

    for campaign_id in result.promoted:
        send_campaign.delay(campaign_id)
    return result.as_dict()


@celery_app.task(name="alo.tasks.campaigns.dispatch_queued_campaigns")
def dispatch_queued_campaigns() -> dict[str, list[int]]:
    """Enqueue a sender for every queued campaign and every stalled one.

    Enqueueing the same campaign twice is harmless: only one sender wins the
    ``queued -> sending`` transition.
    """

    db = SessionLocal()
    try:
        scheduler = CampaignScheduler(db)
        queued = scheduler.queued_campaign_ids()
        stale = scheduler.stale_campaign_ids()
    finally:
        db.close()

    for campaign_id in [*queued, *stale]:
        send_campaign.delay(campaign_id)
    if stale:
        logger.warning("Stalled campaigns re-dispatched", campaign_ids=stale)
    return {"queued": queued, "stale": stale}


@celery_app.task(name="alo.tasks.campaigns.send_campaign")
def send_campaign(campaign_id: int) -> dict[str, object]:
    """Deliver one campaign to its audience."""

    db = SessionLocal()
    try:
        engine = DeliveryEngine(db, WebPushTransport())
        report = engine.run(int(campaign_id))
        return report.as_dict()
    except Exception as exc:
        db.rollback()
        logger.error("Campaign delivery crashed", campaign_id=campaign_id, error=str(exc))
        raise
    finally:
        db.close()


@celery_app.task(name="alo.tasks.campaigns.cleanup_draft_campaigns")
def cleanup_draft_campaigns(retention_days: int | None = None) -> dict[str, int]:
    """Remove drafts abandoned for longer than the retention period."""

    days = settings.DRAFT_RETENTION_DAYS if retention_days is None else retention_days
    db = SessionLocal()
    try:
        deleted = CampaignService(db).cleanup_drafts(days)
        return {"deleted": deleted, "retention_days": days}
    except Exception as exc:
        db.rollback()
        logger.error("Failed to cleanup draft campaigns", error=str(exc))
        raise
    finally:
        db.close()
