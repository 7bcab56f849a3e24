"""Campaign authoring: save, publish, cancel and draft retention."""
from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from alo.config import settings
from alo.core.segments import SegmentCatalog, SegmentFilter, default_catalog, normalize_filters
from alo.core.segments.filters import DuplicatePolicy
from alo.db.models.campaign import Campaign, CampaignSegment, CampaignStatus
from alo.db.models.delivery import DeliveryOutcome, DeliveryStatus
from alo.schemas.campaign import CampaignBase, CampaignCreate, CampaignUpdate
from alo.schemas.segment import SegmentFilterIn
from alo.services.campaign_state import require_transition
from alo.utils.clock import Clock, utcnow
from alo.utils.exceptions import CampaignNotFound, CampaignStateError, SchedulerRaceLost

_PAYLOAD_FIELDS = (
    "name",
    "title",
    "body",
    "url",
    "image",
    "icon",
    "badge",
    "require_interaction",
    "renotify",
    "silent",
    "send_at",
)

_EDITABLE = (CampaignStatus.DRAFT.value, CampaignStatus.CANCELLED.value)
_PUBLISHABLE = (CampaignStatus.DRAFT, CampaignStatus.CANCELLED)
_CANCELLABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)


def campaign_filters(campaign: Campaign) -> list[SegmentFilter]:
    """Stored segments of ``campaign`` as resolver input, in saved order."""

    return [SegmentFilter.of(item.segment_type, item.segment_values) for item in campaign.segments]


class CampaignService:
    """Single-writer operations on campaign records coming from the admin API."""

    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = utcnow,
        catalog: SegmentCatalog = default_catalog,
        duplicate_policy: DuplicatePolicy | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.catalog = catalog
        self.duplicate_policy = duplicate_policy or settings.SEGMENT_DUPLICATE_POLICY

    def get(self, campaign_id: int) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        return campaign

    def list_campaigns(
        self, *, status: CampaignStatus | None = None, limit: int = 50, offset: int = 0
    ) -> list[Campaign]:
        stmt = select(Campaign).order_by(Campaign.created_at.desc(), Campaign.id.desc())
        if status is not None:
            stmt = stmt.where(Campaign.status == status.value)
        return list(self.db.scalars(stmt.offset(offset).limit(limit)))

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------
    def create(self, payload: CampaignCreate) -> Campaign:
        """Store a new draft, then publish it when asked to."""

        filters = self._validated_filters(payload.segments)
        now = self.clock()
        campaign = Campaign(status=CampaignStatus.DRAFT.value, created_at=now, updated_at=now)
        self._apply(campaign, payload, filters)
        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        logger.info("Campaign created", campaign_id=campaign.id, action=payload.action)

        if payload.action == "publish":
            return self.publish(campaign.id)
        return campaign

    def update(self, campaign_id: int, payload: CampaignUpdate) -> Campaign:
        """Replace the editable fields of a draft or cancelled campaign.

        The write is guarded on the stored status, so an edit racing a
        publish or cancel from another session fails instead of rewriting a
        campaign that already left the editable states.
        """

        campaign = self.get(campaign_id)
        if not campaign.is_editable:
            raise self._not_editable(campaign_id, campaign.status)

        filters = self._validated_filters(payload.segments)
        values = {field: getattr(payload, field) for field in _PAYLOAD_FIELDS}
        result = self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .where(Campaign.status.in_(_EDITABLE))
            .values(updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self.db.refresh(campaign)
            raise self._not_editable(campaign_id, campaign.status)

        # Same transaction as the guarded write; the row lock it took keeps
        # publishers out until the new segments are committed.
        self.db.execute(
            delete(CampaignSegment)
            .where(CampaignSegment.campaign_id == campaign_id)
            .execution_options(synchronize_session=False)
        )
        self.db.add_all(
            CampaignSegment(
                campaign_id=campaign_id,
                position=index,
                segment_type=item.type,
                segment_values=sorted(item.values),
            )
            for index, item in enumerate(filters)
        )
        self.db.commit()
        self.db.expire(campaign)
        self.db.refresh(campaign)
        logger.info("Campaign updated", campaign_id=campaign_id, action=payload.action)

        if payload.action == "publish":
            return self.publish(campaign_id)
        if campaign.status == CampaignStatus.CANCELLED.value:
            self._move(campaign, CampaignStatus.CANCELLED, CampaignStatus.DRAFT, cancelled_at=None)
        return campaign

    def publish(self, campaign_id: int) -> Campaign:
        """Queue the campaign now, or schedule it for ``send_at``.

        A ``send_at`` already in the past still goes through ``scheduled`` and
        is picked up by the next scheduler sweep.
        """

        campaign = self.get(campaign_id)
        current = CampaignStatus(campaign.status)
        if current not in _PUBLISHABLE:
            raise CampaignStateError(
                f"Campaign {campaign_id} is {current.value} and cannot be published",
                {"campaign_id": campaign_id, "status": current.value},
            )
        for item in campaign.segments:
            self.catalog.get(item.segment_type)

        now = self.clock()
        if campaign.send_at is None:
            self._move(campaign, current, CampaignStatus.QUEUED, queued_at=now, cancelled_at=None)
        else:
            self._move(campaign, current, CampaignStatus.SCHEDULED, cancelled_at=None)
        return campaign

    def cancel(self, campaign_id: int) -> Campaign:
        """Withdraw a draft or scheduled campaign before it is queued."""

        campaign = self.get(campaign_id)
        current = CampaignStatus(campaign.status)
        if current not in _CANCELLABLE:
            raise CampaignStateError(
                f"Campaign {campaign_id} is {current.value} and cannot be cancelled",
                {"campaign_id": campaign_id, "status": current.value},
            )
        self._move(campaign, current, CampaignStatus.CANCELLED, cancelled_at=self.clock())
        return campaign

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------
    def delivery_report(self, campaign_id: int) -> dict[str, object]:
        campaign = self.get(campaign_id)
        rows = self.db.execute(
            select(DeliveryOutcome.status, func.count(DeliveryOutcome.id))
            .where(DeliveryOutcome.campaign_id == campaign_id)
            .group_by(DeliveryOutcome.status)
        ).all()
        outcomes = {status.value: 0 for status in DeliveryStatus}
        outcomes.update({status: count for status, count in rows})
        return {
            "campaign_id": campaign.id,
            "status": campaign.status,
            "audience_count": campaign.audience_count,
            "sent_count": campaign.sent_count,
            "failed_count": campaign.failed_count,
            "outcomes": outcomes,
        }

    def cleanup_drafts(self, retention_days: int) -> int:
        """Delete drafts untouched for more than ``retention_days`` days.

        Campaigns are deleted first and their segments only for the ids the
        delete actually removed, so a draft published concurrently keeps its
        filters.
        """

        if retention_days < 0:
            raise ValueError("retention_days must not be negative")
        cutoff = self.clock() - timedelta(days=retention_days)
        deleted_ids = list(
            self.db.scalars(
                delete(Campaign)
                .where(Campaign.status == CampaignStatus.DRAFT.value)
                .where(Campaign.updated_at < cutoff)
                .returning(Campaign.id)
                .execution_options(synchronize_session=False)
            ).all()
        )
        if deleted_ids:
            # A no-op where the foreign key cascade already removed them.
            self.db.execute(
                delete(CampaignSegment)
                .where(CampaignSegment.campaign_id.in_(deleted_ids))
                .execution_options(synchronize_session=False)
            )
        self.db.commit()
        logger.info(
            "Abandoned drafts removed",
            deleted_count=len(deleted_ids),
            cutoff=cutoff.isoformat(),
        )
        return len(deleted_ids)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _validated_filters(self, segments: Iterable[SegmentFilterIn]) -> list[SegmentFilter]:
        filters = normalize_filters((item.to_filter() for item in segments), self.duplicate_policy)
        for item in filters:
            self.catalog.get(item.type)
        return filters

    @staticmethod
    def _not_editable(campaign_id: int, status: str) -> CampaignStateError:
        return CampaignStateError(
            f"Campaign {campaign_id} is {status} and can no longer be edited",
            {"campaign_id": campaign_id, "status": status},
        )

    @staticmethod
    def _apply(campaign: Campaign, payload: CampaignBase, filters: list[SegmentFilter]) -> None:
        for field in _PAYLOAD_FIELDS:
            setattr(campaign, field, getattr(payload, field))
        campaign.replace_segments(filters)

    def _move(
        self,
        campaign: Campaign,
        expected: CampaignStatus,
        target: CampaignStatus,
        **values: object,
    ) -> None:
        try:
            require_transition(
                self.db, campaign.id, expected, target, now=self.clock(), **values
            )
        except SchedulerRaceLost as exc:
            raise CampaignStateError(exc.message, exc.details) from exc
        self.db.refresh(campaign)


__all__ = ["CampaignService", "campaign_filters"]
