"""Periodic promotion of due scheduled campaigns into the delivery queue."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from alo.config import settings
from alo.db.models.campaign import Campaign, CampaignStatus
from alo.services.campaign_state import require_transition
from alo.utils.clock import Clock, utcnow
from alo.utils.exceptions import SchedulerRaceLost


@dataclass
class SweepResult:
    """Outcome of one scheduler sweep."""

    due: int = 0
    promoted: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {"due": self.due, "promoted": self.promoted, "skipped": self.skipped}


class CampaignScheduler:
    """Move ``scheduled`` campaigns whose ``send_at`` has passed to ``queued``.

    Overlapping sweeps are safe: promotion is a conditional update, so each
    campaign is promoted by exactly one of them and the others count it as
    skipped.
    """

    def __init__(self, db: Session, *, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    def find_due(self, limit: int | None = None) -> list[int]:
        now = self.clock()
        stmt = (
            select(Campaign.id)
            .where(Campaign.status == CampaignStatus.SCHEDULED.value)
            .where(Campaign.send_at.is_not(None))
            .where(Campaign.send_at <= now)
            .order_by(Campaign.send_at, Campaign.id)
            .limit(limit or settings.SCHEDULER_SWEEP_LIMIT)
        )
        due = list(self.db.scalars(stmt).all())
        self.db.commit()
        return due

    def promote(self, campaign_ids: Iterable[int]) -> SweepResult:
        result = SweepResult()
        for campaign_id in campaign_ids:
            result.due += 1
            now = self.clock()
            try:
                require_transition(
                    self.db,
                    campaign_id,
                    CampaignStatus.SCHEDULED,
                    CampaignStatus.QUEUED,
                    now=now,
                    conditions=(Campaign.send_at <= now,),
                    queued_at=now,
                )
            except SchedulerRaceLost:
                logger.debug("Campaign already promoted elsewhere", campaign_id=campaign_id)
                result.skipped.append(campaign_id)
                continue
            result.promoted.append(campaign_id)
        return result

    def sweep(self, limit: int | None = None) -> SweepResult:
        """Promote every due campaign once."""

        result = self.promote(self.find_due(limit))
        logger.info(
            "Scheduler sweep finished",
            due=result.due,
            promoted=len(result.promoted),
            skipped=len(result.skipped),
        )
        return result

    def queued_campaign_ids(self, limit: int | None = None) -> list[int]:
        """Campaigns waiting for a sender, oldest first."""

        stmt = (
            select(Campaign.id)
            .where(Campaign.status == CampaignStatus.QUEUED.value)
            .order_by(Campaign.queued_at, Campaign.id)
            .limit(limit or settings.SCHEDULER_SWEEP_LIMIT)
        )
        queued = list(self.db.scalars(stmt).all())
        self.db.commit()
        return queued

    def stale_campaign_ids(self, stale_after_seconds: int | None = None) -> list[int]:
        """``sending`` campaigns whose sender stopped reporting a heartbeat."""

        stale_after = stale_after_seconds or settings.DELIVERY_STALE_AFTER_SECONDS
        cutoff = self.clock() - timedelta(seconds=stale_after)
        stmt = (
            select(Campaign.id)
            .where(Campaign.status == CampaignStatus.SENDING.value)
            .where(or_(Campaign.heartbeat_at.is_(None), Campaign.heartbeat_at < cutoff))
            .order_by(Campaign.id)
        )
        stale = list(self.db.scalars(stmt).all())
        self.db.commit()
        return stale


__all__ = ["CampaignScheduler", "SweepResult"]
