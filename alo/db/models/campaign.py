"""Campaign and campaign segment models."""
from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from alo.db.base import Base
from alo.db.types import StringList
from alo.utils.clock import utcnow

TITLE_MAX_LENGTH = 65
BODY_MAX_LENGTH = 180


class CampaignStatus(str, enum.Enum):
    """Lifecycle states of a campaign."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Campaign(Base):
    """A push notification broadcast definition."""

    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)

    # Push payload
    title = Column(String(TITLE_MAX_LENGTH), nullable=False)
    body = Column(String(BODY_MAX_LENGTH), nullable=False)
    url = Column(Text)
    image = Column(Text)
    icon = Column(Text)
    badge = Column(Text)
    require_interaction = Column(Boolean, nullable=False, default=False)
    renotify = Column(Boolean, nullable=False, default=False)
    silent = Column(Boolean, nullable=False, default=False)

    # Lifecycle
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT.value, index=True)
    send_at = Column(DateTime(timezone=True), index=True)
    queued_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    heartbeat_at = Column(DateTime(timezone=True))
    claimed_by = Column(String(32))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    error_message = Column(Text)

    # Outcome counters
    audience_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    segments = relationship(
        "CampaignSegment",
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="CampaignSegment.position",
        lazy="selectin",
    )

    @property
    def is_editable(self) -> bool:
        return self.status in (CampaignStatus.DRAFT.value, CampaignStatus.CANCELLED.value)

    def replace_segments(self, filters) -> None:
        """Replace the stored filter set, preserving the given order."""

        self.segments = [
            CampaignSegment(
                position=index, segment_type=item.type, segment_values=sorted(item.values)
            )
            for index, item in enumerate(filters)
        ]


class CampaignSegment(Base):
    """One audience filter attached to a campaign."""

    __tablename__ = "campaign_segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    segment_type = Column(String(50), nullable=False)
    segment_values = Column(StringList(), nullable=False, default=list)

    campaign = relationship("Campaign", back_populates="segments")
